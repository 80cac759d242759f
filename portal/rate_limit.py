# portal/rate_limit.py
"""
Attempt limiter for the public tracking endpoint.

One record per (caller identity, looked-up key). Within a window of
TRACKING_RATE_WINDOW_MINUTES a caller may make TRACKING_RATE_MAX_ATTEMPTS
lookups; the next one blocks the pair for TRACKING_RATE_BLOCK_MINUTES.

Env vars:
- RATE_LIMIT_BACKEND — database (default) | memory | redis
- REDIS_URL — required for the redis backend
- TRACKING_RATE_WINDOW_MINUTES (default: 60)
- TRACKING_RATE_MAX_ATTEMPTS (default: 10)
- TRACKING_RATE_BLOCK_MINUTES (default: 30)
"""

import os
import datetime
import threading
from dataclasses import dataclass, replace
from typing import Optional, Tuple, Dict

import redis
from sqlalchemy.exc import IntegrityError

from portal import monitoring
from portal import db as dbmod
from portal.models import utcnow

# Configuration
RATE_LIMIT_BACKEND = os.getenv("RATE_LIMIT_BACKEND", "database").strip().lower()
REDIS_URL = os.getenv("REDIS_URL", "")
WINDOW_MINUTES = int(os.getenv("TRACKING_RATE_WINDOW_MINUTES", "60"))
MAX_ATTEMPTS = int(os.getenv("TRACKING_RATE_MAX_ATTEMPTS", "10"))
BLOCK_MINUTES = int(os.getenv("TRACKING_RATE_BLOCK_MINUTES", "30"))

Decision = Tuple[bool, Optional[datetime.datetime]]


@dataclass(frozen=True)
class AttemptRecord:
    attempt_count: int
    first_attempt_at: datetime.datetime
    last_attempt_at: datetime.datetime
    blocked_until: Optional[datetime.datetime] = None


def evaluate_attempt(
    record: Optional[AttemptRecord],
    now: datetime.datetime,
    window: datetime.timedelta,
    max_attempts: int,
    block: datetime.timedelta,
) -> Tuple[AttemptRecord, bool, Optional[datetime.datetime]]:
    """
    Apply one attempt to `record`. Returns (new_record, allowed, blocked_until).

    An active block wins over window expiry. Once `now >= blocked_until` the
    pair starts over with a fresh window.
    """
    fresh = AttemptRecord(attempt_count=1, first_attempt_at=now, last_attempt_at=now)
    if record is None:
        return fresh, True, None

    if record.blocked_until is not None:
        if now < record.blocked_until:
            return record, False, record.blocked_until
        return fresh, True, None

    if now - record.first_attempt_at > window:
        return fresh, True, None

    count = record.attempt_count + 1
    if count > max_attempts:
        blocked_until = now + block
        return replace(record, attempt_count=count, last_attempt_at=now, blocked_until=blocked_until), False, blocked_until

    return replace(record, attempt_count=count, last_attempt_at=now), True, None


def _is_stale(record: AttemptRecord, now: datetime.datetime, window: datetime.timedelta) -> bool:
    if record.blocked_until is not None and now < record.blocked_until:
        return False
    return record.blocked_until is not None or now - record.first_attempt_at > window


class _BaseAttemptLimiter:
    def __init__(self, window_minutes: int = 60, max_attempts: int = 10, block_minutes: int = 30):
        self.window = datetime.timedelta(minutes=window_minutes)
        self.max_attempts = max_attempts
        self.block = datetime.timedelta(minutes=block_minutes)

    def _evaluate(self, record: Optional[AttemptRecord], now: datetime.datetime):
        return evaluate_attempt(record, now, self.window, self.max_attempts, self.block)


class InMemoryAttemptLimiter(_BaseAttemptLimiter):
    """Thread-safe in-memory limiter (per-process)."""

    def __init__(self, window_minutes: int = 60, max_attempts: int = 10, block_minutes: int = 30):
        super().__init__(window_minutes, max_attempts, block_minutes)
        self._store: Dict[Tuple[str, str], AttemptRecord] = {}
        self._lock = threading.Lock()

    def check_and_record_attempt(self, identity: str, key: str, now: Optional[datetime.datetime] = None) -> Decision:
        now = now or utcnow()
        with self._lock:
            record, allowed, blocked_until = self._evaluate(self._store.get((identity, key)), now)
            self._store[(identity, key)] = record
        return allowed, blocked_until

    def get_record(self, identity: str, key: str) -> Optional[AttemptRecord]:
        with self._lock:
            return self._store.get((identity, key))

    def purge_expired(self, now: Optional[datetime.datetime] = None) -> int:
        now = now or utcnow()
        with self._lock:
            stale = [k for k, rec in self._store.items() if _is_stale(rec, now, self.window)]
            for k in stale:
                del self._store[k]
        return len(stale)

    def reset(self):
        """Reset all state (useful for tests)."""
        with self._lock:
            self._store.clear()


class DatabaseAttemptLimiter(_BaseAttemptLimiter):
    """
    Limiter backed by the public_tracking_rate_limit table.

    Each attempt is a single transaction over a locked row, so the load, the
    decision and the write cannot interleave with another attempt on the same
    pair. Two first attempts racing on the insert hit the unique constraint;
    the loser retries against the winner's row.
    """

    def __init__(self, window_minutes: int = 60, max_attempts: int = 10, block_minutes: int = 30):
        super().__init__(window_minutes, max_attempts, block_minutes)
        self._lock = threading.Lock()

    def check_and_record_attempt(self, identity: str, key: str, now: Optional[datetime.datetime] = None) -> Decision:
        now = now or utcnow()
        try:
            return self._attempt(identity, key, now)
        except IntegrityError:
            monitoring.logger.info("Rate limit insert race, retrying", extra={"ip": identity})
            return self._attempt(identity, key, now)

    def _attempt(self, identity: str, key: str, now: datetime.datetime) -> Decision:
        from portal.models import TrackingRateLimit
        with self._lock:
            db = dbmod.SessionLocal()
            try:
                row = (
                    db.query(TrackingRateLimit)
                    .filter(TrackingRateLimit.ip_address == identity, TrackingRateLimit.phone == key)
                    .with_for_update()
                    .first()
                )
                current = None
                if row is not None:
                    current = AttemptRecord(
                        attempt_count=row.attempt_count,
                        first_attempt_at=row.first_attempt_at,
                        last_attempt_at=row.last_attempt_at,
                        blocked_until=row.blocked_until,
                    )
                record, allowed, blocked_until = self._evaluate(current, now)
                if row is None:
                    row = TrackingRateLimit(ip_address=identity, phone=key)
                    db.add(row)
                row.attempt_count = record.attempt_count
                row.first_attempt_at = record.first_attempt_at
                row.last_attempt_at = record.last_attempt_at
                row.blocked_until = record.blocked_until
                db.commit()
                return allowed, blocked_until
            except Exception:
                db.rollback()
                raise
            finally:
                db.close()

    def get_record(self, identity: str, key: str) -> Optional[AttemptRecord]:
        from portal.models import TrackingRateLimit
        db = dbmod.SessionLocal()
        try:
            row = (
                db.query(TrackingRateLimit)
                .filter(TrackingRateLimit.ip_address == identity, TrackingRateLimit.phone == key)
                .first()
            )
            if row is None:
                return None
            return AttemptRecord(row.attempt_count, row.first_attempt_at, row.last_attempt_at, row.blocked_until)
        finally:
            db.close()

    def purge_expired(self, now: Optional[datetime.datetime] = None) -> int:
        from portal.models import TrackingRateLimit
        now = now or utcnow()
        window_start = now - self.window
        db = dbmod.SessionLocal()
        try:
            expired_block = (TrackingRateLimit.blocked_until.isnot(None)) & (TrackingRateLimit.blocked_until <= now)
            expired_window = (TrackingRateLimit.blocked_until.is_(None)) & (TrackingRateLimit.first_attempt_at < window_start)
            count = (
                db.query(TrackingRateLimit)
                .filter(expired_block | expired_window)
                .delete(synchronize_session=False)
            )
            db.commit()
            return count
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()


# KEYS[1] record hash; ARGV: now_ms, window_ms, max_attempts, block_ms, ttl_seconds
_REDIS_ATTEMPT_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local max_attempts = tonumber(ARGV[3])
local block = tonumber(ARGV[4])
local ttl = tonumber(ARGV[5])
local rec = redis.call('HMGET', key, 'count', 'first', 'blocked_until')
local count = tonumber(rec[1])
local first = tonumber(rec[2])
local blocked = tonumber(rec[3])
if blocked and now < blocked then
  return {0, blocked}
end
if (not count) or blocked or (now - first > window) then
  redis.call('DEL', key)
  redis.call('HSET', key, 'count', 1, 'first', now, 'last', now)
  redis.call('EXPIRE', key, ttl)
  return {1, 0}
end
count = count + 1
if count > max_attempts then
  local until_ms = now + block
  redis.call('HSET', key, 'count', count, 'last', now, 'blocked_until', until_ms)
  redis.call('EXPIRE', key, ttl)
  return {0, until_ms}
end
redis.call('HSET', key, 'count', count, 'last', now)
return {1, 0}
"""


def _to_ms(value: datetime.datetime) -> int:
    return int(value.replace(tzinfo=datetime.timezone.utc).timestamp() * 1000)


def _from_ms(value: int) -> datetime.datetime:
    return datetime.datetime.fromtimestamp(value / 1000, tz=datetime.timezone.utc).replace(tzinfo=None)


class RedisAttemptLimiter(_BaseAttemptLimiter):
    """Redis limiter; the whole decision runs server-side in one Lua script."""

    def __init__(
        self,
        redis_url: Optional[str] = None,
        window_minutes: int = 60,
        max_attempts: int = 10,
        block_minutes: int = 30,
        client: Optional[redis.Redis] = None,
    ):
        super().__init__(window_minutes, max_attempts, block_minutes)
        self._client = client if client is not None else redis.from_url(redis_url, decode_responses=True)
        self._script = self._client.register_script(_REDIS_ATTEMPT_SCRIPT)
        self._ttl = int(max(self.window, self.block).total_seconds()) + 60

    def check_and_record_attempt(self, identity: str, key: str, now: Optional[datetime.datetime] = None) -> Decision:
        now = now or utcnow()
        redis_key = f"tracking-rate:{identity}:{key}"
        try:
            allowed, until_ms = self._script(
                keys=[redis_key],
                args=[
                    _to_ms(now),
                    int(self.window.total_seconds() * 1000),
                    self.max_attempts,
                    int(self.block.total_seconds() * 1000),
                    self._ttl,
                ],
            )
        except redis.RedisError:
            # Fail open on Redis errors
            monitoring.logger.warning("Redis rate limiter unavailable, allowing lookup", extra={"ip": identity})
            return True, None
        if int(allowed) == 1:
            return True, None
        return False, _from_ms(int(until_ms))

    def get_record(self, identity: str, key: str) -> Optional[AttemptRecord]:
        rec = self._client.hgetall(f"tracking-rate:{identity}:{key}")
        if not rec:
            return None
        blocked = rec.get("blocked_until")
        return AttemptRecord(
            attempt_count=int(float(rec["count"])),
            first_attempt_at=_from_ms(int(float(rec["first"]))),
            last_attempt_at=_from_ms(int(float(rec["last"]))),
            blocked_until=_from_ms(int(float(blocked))) if blocked else None,
        )


def _build_limiter():
    kwargs = dict(window_minutes=WINDOW_MINUTES, max_attempts=MAX_ATTEMPTS, block_minutes=BLOCK_MINUTES)
    if RATE_LIMIT_BACKEND == "redis" and REDIS_URL:
        return RedisAttemptLimiter(REDIS_URL, **kwargs)
    if RATE_LIMIT_BACKEND == "memory":
        return InMemoryAttemptLimiter(**kwargs)
    return DatabaseAttemptLimiter(**kwargs)


_limiter = _build_limiter()


def get_limiter():
    """Return the process-wide limiter instance."""
    return _limiter
