from __future__ import annotations
from redis import Redis
from rq import Queue
from rewardflow.config import settings

def get_queue() -> Queue:
    return Queue("default", connection=Redis.from_url(settings.redis_url))
