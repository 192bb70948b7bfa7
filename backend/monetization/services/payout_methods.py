import logging
import uuid
from datetime import datetime
from typing import Callable, List, Optional

from sqlalchemy import select, func, desc, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from monetization.errors import PayoutMethodNotFound, ProviderNotSupported, ValidationError
from monetization.models.base import utcnow
from monetization.models.payout_method import PayoutMethod
from monetization.models.withdrawal import WithdrawalChannel
from monetization.services.crypto import DestinationCipher, mask_destination, normalize_destination
from monetization.services.policy import RatePolicy

logger = logging.getLogger(__name__)


class PayoutMethodBook:
    """Saved mobile money wallets, one default per user.

    Numbers are stored as Fernet tokens next to a keyed fingerprint so the
    same wallet cannot be saved twice.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        policy: RatePolicy,
        cipher: DestinationCipher,
        clock: Callable[[], datetime] = utcnow,
        max_methods: int = 5,
    ):
        self.session_factory = session_factory
        self.policy = policy
        self.cipher = cipher
        self.clock = clock
        self.max_methods = max_methods

    async def add_method(
        self,
        user_id: uuid.UUID,
        country: str,
        provider: str,
        destination: str,
        label: Optional[str] = None,
        make_default: bool = False,
    ) -> PayoutMethod:
        country = country.upper()
        if not any(self.policy.is_provider_supported(channel, country, provider) for channel in WithdrawalChannel):
            raise ProviderNotSupported(provider, country)
        destination = normalize_destination(destination)
        fingerprint = self.cipher.fingerprint(destination)
        now = self.clock()

        try:
            async with self.session_factory() as db:
                async with db.begin():
                    result = await db.execute(
                        select(PayoutMethod).where(
                            PayoutMethod.user_id == user_id,
                            PayoutMethod.fingerprint == fingerprint,
                        )
                    )
                    method = result.scalar_one_or_none()
                    if method is not None and method.is_active:
                        raise ValidationError("This wallet is already saved")

                    active = await self._active_count(db, user_id)
                    if active >= self.max_methods:
                        raise ValidationError(f"At most {self.max_methods} payout methods can be saved")

                    if method is None:
                        method = PayoutMethod(id=uuid.uuid4(), user_id=user_id, fingerprint=fingerprint, created_at=now)
                        db.add(method)
                    method.country = country
                    method.provider = provider
                    method.destination = self.cipher.encrypt(destination)
                    method.destination_hint = mask_destination(destination)
                    method.label = label
                    method.is_active = True
                    method.is_default = make_default or active == 0
                    method.updated_at = now
                    await db.flush()

                    if method.is_default:
                        await self._clear_default(db, user_id, keep=method.id)
        except IntegrityError:
            raise ValidationError("This wallet is already saved")

        logger.info("[Payout] Saved %s wallet %s for %s", provider, method.destination_hint, user_id)
        return method

    async def list_methods(self, user_id: uuid.UUID) -> List[PayoutMethod]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(PayoutMethod)
                .where(PayoutMethod.user_id == user_id, PayoutMethod.is_active.is_(True))
                .order_by(desc(PayoutMethod.is_default), desc(PayoutMethod.created_at))
            )
            return list(result.scalars().all())

    async def get_method(self, user_id: uuid.UUID, method_id: uuid.UUID) -> PayoutMethod:
        async with self.session_factory() as db:
            method = await db.get(PayoutMethod, method_id)
        if method is None or method.user_id != user_id or not method.is_active:
            raise PayoutMethodNotFound(f"Payout method {method_id} not found")
        return method

    async def default_method(self, user_id: uuid.UUID) -> Optional[PayoutMethod]:
        methods = await self.list_methods(user_id)
        return methods[0] if methods else None

    async def set_default(self, user_id: uuid.UUID, method_id: uuid.UUID) -> PayoutMethod:
        async with self.session_factory() as db:
            async with db.begin():
                method = await self._owned(db, user_id, method_id)
                method.is_default = True
                method.updated_at = self.clock()
                await self._clear_default(db, user_id, keep=method.id)
        return method

    async def remove_method(self, user_id: uuid.UUID, method_id: uuid.UUID) -> None:
        async with self.session_factory() as db:
            async with db.begin():
                method = await self._owned(db, user_id, method_id)
                was_default = method.is_default
                method.is_active = False
                method.is_default = False
                method.updated_at = self.clock()
                await db.flush()

                if was_default:
                    result = await db.execute(
                        select(PayoutMethod)
                        .where(PayoutMethod.user_id == user_id, PayoutMethod.is_active.is_(True))
                        .order_by(desc(PayoutMethod.created_at))
                        .limit(1)
                    )
                    successor = result.scalar_one_or_none()
                    if successor is not None:
                        successor.is_default = True
        logger.info("[Payout] Removed wallet %s for %s", method.destination_hint, user_id)

    async def mark_used(self, method_id: uuid.UUID) -> None:
        async with self.session_factory() as db:
            async with db.begin():
                await db.execute(
                    update(PayoutMethod).where(PayoutMethod.id == method_id).values(last_used_at=self.clock())
                )

    async def _owned(self, db: AsyncSession, user_id: uuid.UUID, method_id: uuid.UUID) -> PayoutMethod:
        result = await db.execute(
            select(PayoutMethod).where(PayoutMethod.id == method_id).with_for_update()
        )
        method = result.scalar_one_or_none()
        if method is None or method.user_id != user_id or not method.is_active:
            raise PayoutMethodNotFound(f"Payout method {method_id} not found")
        return method

    @staticmethod
    async def _active_count(db: AsyncSession, user_id: uuid.UUID) -> int:
        result = await db.execute(
            select(func.count(PayoutMethod.id)).where(
                PayoutMethod.user_id == user_id,
                PayoutMethod.is_active.is_(True),
            )
        )
        return int(result.scalar_one())

    @staticmethod
    async def _clear_default(db: AsyncSession, user_id: uuid.UUID, keep: uuid.UUID) -> None:
        await db.execute(
            update(PayoutMethod)
            .where(PayoutMethod.user_id == user_id, PayoutMethod.id != keep)
            .values(is_default=False)
        )
