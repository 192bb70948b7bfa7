import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from monetization.config import Settings
from monetization.gateways.registry import GatewayRegistry, build_gateways
from monetization.models.base import utcnow
from monetization.services.accrual import AccrualEngine
from monetization.services.crypto import DestinationCipher
from monetization.services.eligibility import EligibilityGate
from monetization.services.ledger import BalanceLedger
from monetization.services.notifications import LogNotifier, WebhookNotifier
from monetization.services.payout_methods import PayoutMethodBook
from monetization.services.payouts import PayoutRouter
from monetization.services.policy import RatePolicy
from monetization.services.withdrawals import WithdrawalStateMachine

logger = logging.getLogger(__name__)


@dataclass
class ServiceContext:
    settings: Settings
    session_factory: async_sessionmaker[AsyncSession]
    policy: RatePolicy
    ledger: BalanceLedger
    accrual: AccrualEngine
    gate: EligibilityGate
    state_machine: WithdrawalStateMachine
    payouts: PayoutRouter
    payout_methods: PayoutMethodBook
    gateways: GatewayRegistry
    notifier: LogNotifier

    async def aclose(self) -> None:
        await self.notifier.aclose()
        await self.gateways.aclose()


def build_notifier(settings: Settings) -> LogNotifier:
    if settings.NOTIFICATION_WEBHOOK_URL:
        return WebhookNotifier(settings.NOTIFICATION_WEBHOOK_URL, timeout=settings.NOTIFICATION_TIMEOUT_SECONDS)
    return LogNotifier()


def build_services(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    policy: Optional[RatePolicy] = None,
    gateways: Optional[GatewayRegistry] = None,
    notifier: Optional[LogNotifier] = None,
    clock: Callable[[], datetime] = utcnow,
) -> ServiceContext:
    policy = policy or RatePolicy()
    gateways = gateways or build_gateways(settings)
    notifier = notifier or build_notifier(settings)

    ledger = BalanceLedger(clock=clock)
    gate = EligibilityGate(session_factory, ledger, policy, clock=clock)
    state_machine = WithdrawalStateMachine(session_factory, ledger, policy, notifier, clock=clock)
    cipher = DestinationCipher(settings.DESTINATION_ENCRYPTION_KEY)
    payout_methods = PayoutMethodBook(
        session_factory, policy, cipher, clock=clock, max_methods=settings.MAX_PAYOUT_METHODS
    )
    payouts = PayoutRouter(
        session_factory,
        ledger,
        policy,
        gate,
        state_machine,
        gateways,
        cipher,
        notifier,
        clock=clock,
        gateway_timeout=settings.GATEWAY_TIMEOUT_SECONDS,
        currency=settings.PAYOUT_CURRENCY,
        description=settings.PAYOUT_DESCRIPTION,
        reconcile_grace_seconds=settings.RECONCILE_GRACE_SECONDS,
        reconcile_max_age_minutes=settings.RECONCILE_MAX_AGE_MINUTES,
        reconcile_batch_size=settings.RECONCILE_BATCH_SIZE,
        max_auto_retries=settings.MAX_AUTO_RETRIES,
        methods=payout_methods,
    )
    accrual = AccrualEngine(session_factory, ledger, policy, clock=clock)

    logger.info("Services ready: gateway=%s, notifier=%s", settings.GATEWAY_MODE, type(notifier).__name__)
    return ServiceContext(
        settings=settings,
        session_factory=session_factory,
        policy=policy,
        ledger=ledger,
        accrual=accrual,
        gate=gate,
        state_machine=state_machine,
        payouts=payouts,
        payout_methods=payout_methods,
        gateways=gateways,
        notifier=notifier,
    )
