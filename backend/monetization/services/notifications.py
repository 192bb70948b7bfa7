import asyncio
import logging
from dataclasses import dataclass, asdict
from typing import Optional, Set

import httpx

logger = logging.getLogger(__name__)


class NotificationType:
    INITIATED = "initiated"
    SUCCESS = "success"
    FAILED = "failed"


@dataclass(frozen=True)
class WithdrawalNotification:
    user_id: str
    type: str
    amount: float  # USD, gross
    provider: str
    withdrawal_id: str
    reason: Optional[str] = None


class LogNotifier:
    """Fire-and-forget notification sink that only logs.

    ``send`` never raises and never blocks the caller; a failed delivery is
    logged and dropped.
    """

    def __init__(self):
        self._tasks: Set[asyncio.Task] = set()

    def send(self, notification: WithdrawalNotification) -> None:
        task = asyncio.get_running_loop().create_task(self._deliver(notification))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _deliver(self, notification: WithdrawalNotification) -> None:
        try:
            await self.notify(notification)
        except Exception as e:
            logger.warning(
                "[Notify] Could not deliver %s for withdrawal %s: %s",
                notification.type, notification.withdrawal_id, e,
            )

    async def notify(self, notification: WithdrawalNotification) -> None:
        logger.info(
            "[Notify] %s: withdrawal %s of $%.2f via %s for user %s",
            notification.type, notification.withdrawal_id, notification.amount,
            notification.provider, notification.user_id,
        )

    async def drain(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def aclose(self) -> None:
        await self.drain()


class WebhookNotifier(LogNotifier):
    def __init__(self, url: str, timeout: float = 5.0, client: Optional[httpx.AsyncClient] = None):
        super().__init__()
        self.url = url
        self.client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout))

    async def notify(self, notification: WithdrawalNotification) -> None:
        response = await self.client.post(self.url, json=asdict(notification))
        response.raise_for_status()
        logger.debug("[Notify] Delivered %s for withdrawal %s", notification.type, notification.withdrawal_id)

    async def aclose(self) -> None:
        await super().aclose()
        await self.client.aclose()
