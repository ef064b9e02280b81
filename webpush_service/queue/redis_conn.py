import os
import redis
from rq import Queue

REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")

# String-decoding connection for the subscription cache
redis_conn_global = redis.from_url(REDIS_URL, decode_responses=True)

# RQ stores pickled job data, so its connection must return raw bytes
queue_conn = redis.from_url(REDIS_URL)
dispatch_queue = Queue("push-dispatch", connection=queue_conn)


def get_queue() -> Queue:
    """FastAPI dependency that provides the dispatch queue."""
    return dispatch_queue
