"""
Dramatiq worker infrastructure for background jobs.

Sets up the broker shared by every worker module. Deployments use Redis;
``DRAMATIQ_BROKER=stub`` swaps in Dramatiq's in-memory broker for tests and
local scripts. CurrentMessage is required by ``run_job`` to read the attempt
number of the message being processed.
"""
import logging

import dramatiq
from dramatiq.brokers.redis import RedisBroker
from dramatiq.brokers.stub import StubBroker
from dramatiq.middleware import CurrentMessage

from app.config import settings

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)

if settings.dramatiq_broker == "stub":
    broker = StubBroker()
else:
    broker = RedisBroker(url=settings.redis_url)

broker.add_middleware(CurrentMessage())
dramatiq.set_broker(broker)
