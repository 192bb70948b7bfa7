import hashlib
import hmac
import logging
import re
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from monetization.errors import ValidationError

logger = logging.getLogger(__name__)

MSISDN_RE = re.compile(r"^\+?\d{8,15}$")


def normalize_destination(destination: str) -> str:
    """Strip the separators people type into phone numbers and validate the rest."""
    cleaned = re.sub(r"[\s\-().]", "", destination or "")
    if not MSISDN_RE.match(cleaned):
        raise ValidationError("Invalid destination: expected a mobile money number of 8-15 digits")
    return cleaned


def mask_destination(destination: str) -> str:
    if len(destination) <= 4:
        return "*" * len(destination)
    return "*" * (len(destination) - 4) + destination[-4:]


class DestinationCipher:
    """Fernet wrapper for payout destinations stored on withdrawals and saved payout methods."""

    def __init__(self, key: Optional[str] = None):
        if not key:
            logger.warning("[Crypto] DESTINATION_ENCRYPTION_KEY not set, using an ephemeral key")
            key = Fernet.generate_key().decode()
        key = key.encode() if isinstance(key, str) else key
        self.fernet = Fernet(key)
        self._fingerprint_key = key

    def encrypt(self, destination: str) -> str:
        return self.fernet.encrypt(destination.encode()).decode()

    def decrypt(self, token: str) -> str:
        try:
            return self.fernet.decrypt(token.encode()).decode()
        except InvalidToken:
            logger.error("[Crypto] Could not decrypt payout destination, key rotated?")
            raise

    def fingerprint(self, destination: str) -> str:
        """Stable keyed digest, lets saved destinations be compared without decrypting them."""
        return hmac.new(self._fingerprint_key, destination.encode(), hashlib.sha256).hexdigest()
