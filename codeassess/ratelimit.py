from __future__ import annotations

import time
from collections import defaultdict, deque
from threading import Lock

from redis import Redis
from redis.exceptions import RedisError

from codeassess.config import LOGIN_RATE_LIMIT_ATTEMPTS, LOGIN_RATE_LIMIT_WINDOW_SECONDS, REDIS_URL

redis_conn = Redis.from_url(REDIS_URL, socket_connect_timeout=1, socket_timeout=1)

_login_attempts: defaultdict[str, deque[float]] = defaultdict(deque)
_login_rate_lock = Lock()


def check_redis_connection() -> bool:
    try:
        return bool(redis_conn.ping())
    except Exception:
        return False


def increment_rate_limit(key: str, window_seconds: int) -> int:
    pipe = redis_conn.pipeline(transaction=True)
    try:
        pipe.incr(key)
        pipe.expire(key, window_seconds, nx=True)
        current, _ = pipe.execute()
    except RedisError:
        return -1
    return int(current)


def clear_rate_limit(key: str) -> None:
    try:
        redis_conn.delete(key)
    except RedisError:
        return


def is_login_rate_limited(client_key: str) -> bool:
    redis_count = increment_rate_limit(f"auth:login-attempts:{client_key}", LOGIN_RATE_LIMIT_WINDOW_SECONDS)
    if redis_count >= 0:
        return redis_count > LOGIN_RATE_LIMIT_ATTEMPTS

    # Redis unavailable: fall back to a per-process sliding window.
    now = time.time()
    with _login_rate_lock:
        attempts = _login_attempts[client_key]
        while attempts and now - attempts[0] > LOGIN_RATE_LIMIT_WINDOW_SECONDS:
            attempts.popleft()
        if len(attempts) >= LOGIN_RATE_LIMIT_ATTEMPTS:
            return True
        attempts.append(now)
        return False


def reset_login_attempts(client_key: str) -> None:
    clear_rate_limit(f"auth:login-attempts:{client_key}")
    with _login_rate_lock:
        _login_attempts.pop(client_key, None)
