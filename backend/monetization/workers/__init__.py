import logging
import dramatiq
from dramatiq.brokers.redis import RedisBroker
from monetization.config import settings

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

redis_broker = RedisBroker(url=settings.REDIS_URL)
dramatiq.set_broker(redis_broker)

from monetization.workers.reconciliation import *
