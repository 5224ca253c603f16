import time, threading, logging
import redis
from flask import current_app

logger = logging.getLogger(__name__)

_r = None
_lock = threading.Lock()

# (limit, window seconds)
REDEEM_LIMIT = (10, 3600)
VALIDATE_LIMIT = (10, 60)
CLAIM_LIMIT = (3, 3600)
DOWNLOAD_LIMIT = (20, 3600)


class RateLimitExceeded(Exception):
    def __init__(self, limit, reset):
        super().__init__('rate exceeded')
        self.limit = limit
        self.reset = reset


class _MemStore:
    """Single-process counters for tests and local runs. Not shared across workers."""

    def __init__(self):
        self._data = {}
        self._exp = {}
        self._lock = threading.Lock()

    def _cleanup(self):
        now = time.time()
        expired = [k for k, ts in self._exp.items() if ts <= now]
        for k in expired:
            self._data.pop(k, None)
            self._exp.pop(k, None)

    def hit(self, key, ttl):
        with self._lock:
            self._cleanup()
            v = self._data.get(key, 0) + 1
            self._data[key] = v
            self._exp.setdefault(key, time.time() + ttl)
            return v


class _RedisStore:
    def __init__(self, client):
        self.client = client

    def hit(self, key, ttl):
        pipe = self.client.pipeline(transaction=True)
        pipe.incr(key)
        pipe.expire(key, ttl)
        v, _ = pipe.execute()
        return int(v)


def r():
    global _r
    if _r is not None:
        return _r
    with _lock:
        if _r is not None:
            return _r
        backend = current_app.config.get('RATE_LIMIT_BACKEND', 'redis')
        if backend == 'memory':
            logger.warning('rate limiting uses in-process counters; limits are per worker')
            _set(_MemStore())
        else:
            client = redis.from_url(current_app.config['REDIS_URL'], decode_responses=True)
            _set(_RedisStore(client))
        return _r


def _set(store):
    global _r
    _r = store


def reset():
    _set(None)


def check(scope: str, key: str, limit_window):
    """Count one hit for ``key`` in ``scope``; raise once the window's limit is passed."""
    limit, window = limit_window
    slot = int(time.time() // window)
    k = f"rl:{scope}:{key}:{slot}"
    v = r().hit(k, window)
    if v > limit:
        reset_in = int((slot + 1) * window - time.time())
        logger.info('rate limit hit scope=%s key=%s count=%d', scope, key, v)
        raise RateLimitExceeded(limit, max(reset_in, 1))
    return limit - v
