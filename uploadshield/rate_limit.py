"""
rate_limit.py – Multi-tier upload rate limiting.

Tiers are checked cheapest/strictest first and the first denial wins:

  burst       – per IP, 10 uploads / 1 min
  large_file  – per IP, 5 uploads / 30 min, only above 10MB declared size
  suspicious  – per flagged identity, 5 uploads or 50MB / 5 min
  general     – per IP, 50 uploads or 500MB / 15 min
  per_user    – per user id, 100 uploads or 1GB / 1 h (skipped for anonymous)

Check and record happen under the locks of every identity involved, so two
concurrent requests from the same identity never both pass on stale counts.
Entries live in a ``RateLimitStore``; the in-memory store suits one process
and can be swapped for a shared one without touching callers.
"""

from dataclasses import dataclass, field, replace
from typing import Callable, Iterator, Protocol
import logging
import math
import threading
import time
import zlib

logger = logging.getLogger("uploadshield.rate_limit")

MIB = 1024 * 1024


@dataclass(frozen=True)
class RateLimitTier:
    name: str
    window_seconds: float
    max_uploads: int
    max_total_bytes: int | None = None
    description: str = ""


@dataclass(frozen=True)
class RateLimitConfig:
    burst: RateLimitTier = RateLimitTier(
        "burst", 60, 10, description="10 uploads per minute"
    )
    large_file: RateLimitTier = RateLimitTier(
        "large_file", 30 * 60, 5, description="5 large files per 30 minutes"
    )
    suspicious: RateLimitTier = RateLimitTier(
        "suspicious", 5 * 60, 5, 50 * MIB, description="restricted limits for flagged identities"
    )
    general: RateLimitTier = RateLimitTier(
        "general", 15 * 60, 50, 500 * MIB, description="50 uploads or 500MB per 15 minutes"
    )
    per_user: RateLimitTier = RateLimitTier(
        "per_user", 60 * 60, 100, 1024 * MIB, description="100 uploads or 1GB per hour"
    )
    large_file_threshold: int = 10 * MIB
    suspicious_duration_seconds: float = 60 * 60

    def tiers(self) -> tuple[RateLimitTier, ...]:
        return (self.burst, self.large_file, self.suspicious, self.general, self.per_user)


@dataclass
class RateLimitEntry:
    count: int
    total_size_bytes: int
    first_request_at: float
    last_request_at: float
    suspicious_flag: bool = False

    def expired(self, tier: RateLimitTier, now: float) -> bool:
        return now - self.first_request_at >= tier.window_seconds

    def reset_at(self, tier: RateLimitTier) -> float:
        return self.first_request_at + tier.window_seconds


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    tier: str
    limit: int
    remaining: int
    reset_at: float
    reason: str | None = None
    retry_after: int | None = None

    def headers(self) -> dict[str, str]:
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(int(math.ceil(self.reset_at))),
        }
        if self.retry_after is not None:
            headers["Retry-After"] = str(self.retry_after)
        return headers


class RateLimitStore(Protocol):
    def get(self, tier: str, key: str) -> RateLimitEntry | None: ...

    def put(self, tier: str, key: str, entry: RateLimitEntry) -> None: ...

    def delete(self, tier: str, key: str) -> None: ...

    def items(self) -> Iterator[tuple[str, str, RateLimitEntry]]: ...


class InMemoryRateLimitStore:
    def __init__(self):
        self._entries: dict[tuple[str, str], RateLimitEntry] = {}
        self._guard = threading.Lock()

    def get(self, tier: str, key: str) -> RateLimitEntry | None:
        with self._guard:
            entry = self._entries.get((tier, key))
            return replace(entry) if entry else None

    def put(self, tier: str, key: str, entry: RateLimitEntry) -> None:
        with self._guard:
            self._entries[(tier, key)] = replace(entry)

    def delete(self, tier: str, key: str) -> None:
        with self._guard:
            self._entries.pop((tier, key), None)

    def items(self) -> Iterator[tuple[str, str, RateLimitEntry]]:
        with self._guard:
            snapshot = [(tier, key, replace(entry)) for (tier, key), entry in self._entries.items()]
        return iter(snapshot)

    def clear(self) -> None:
        with self._guard:
            self._entries.clear()


class _StripedLocks:
    """Fixed pool of locks; one identity always maps to the same lock."""

    def __init__(self, stripes: int = 64):
        self._locks = [threading.Lock() for _ in range(stripes)]

    def _index(self, key: str) -> int:
        return zlib.crc32(key.encode("utf-8")) % len(self._locks)

    def acquire_all(self, keys: list[str]) -> list[threading.Lock]:
        # Sorted acquisition keeps two multi-key requests from deadlocking.
        indexes = sorted({self._index(key) for key in keys})
        locks = [self._locks[index] for index in indexes]
        for lock in locks:
            lock.acquire()
        return locks

    @staticmethod
    def release_all(locks: list[threading.Lock]) -> None:
        for lock in reversed(locks):
            lock.release()


@dataclass
class _TierCheck:
    tier: RateLimitTier
    key: str
    entry: RateLimitEntry | None = field(default=None)


class UploadRateLimiter:
    def __init__(
        self,
        config: RateLimitConfig | None = None,
        store: RateLimitStore | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config or RateLimitConfig()
        self.store = store if store is not None else InMemoryRateLimitStore()
        self._clock = clock
        self._locks = _StripedLocks()
        self._suspicious: dict[str, float] = {}
        self._suspicious_guard = threading.Lock()

    def check_upload(
        self,
        ip_address: str,
        user_id: str | None = None,
        file_size: int = 0,
    ) -> RateLimitDecision:
        """Check every applicable tier and, if all pass, record the upload."""
        keys = [ip_address] + ([user_id] if user_id else [])
        locks = self._locks.acquire_all(keys)
        try:
            now = self._clock()
            plan = self._plan(ip_address, user_id, file_size, now)
            for check in plan:
                denial = self._evaluate(check, now, file_size)
                if denial is not None:
                    logger.warning(
                        "Upload blocked by %s tier: identity=%s retry_after=%s",
                        check.tier.name, check.key, denial.retry_after,
                    )
                    return denial
            for check in plan:
                self._record(check, now, file_size)
        finally:
            self._locks.release_all(locks)

        general = self.store.get(self.config.general.name, ip_address)
        return RateLimitDecision(
            allowed=True,
            tier=self.config.general.name,
            limit=self.config.general.max_uploads,
            remaining=max(0, self.config.general.max_uploads - (general.count if general else 0)),
            reset_at=general.reset_at(self.config.general) if general else now + self.config.general.window_seconds,
        )

    def _plan(self, ip_address: str, user_id: str | None, file_size: int, now: float) -> list[_TierCheck]:
        config = self.config
        plan = [_TierCheck(config.burst, ip_address)]
        if file_size > config.large_file_threshold:
            plan.append(_TierCheck(config.large_file, ip_address))
        suspicious_key = self._suspicious_identity(ip_address, user_id, now)
        if suspicious_key is not None:
            plan.append(_TierCheck(config.suspicious, suspicious_key))
        plan.append(_TierCheck(config.general, ip_address))
        if user_id:
            plan.append(_TierCheck(config.per_user, user_id))
        for check in plan:
            check.entry = self.store.get(check.tier.name, check.key)
        return plan

    def _evaluate(self, check: _TierCheck, now: float, file_size: int) -> RateLimitDecision | None:
        tier, entry = check.tier, check.entry
        if entry is None or entry.expired(tier, now):
            return None

        over_count = entry.count >= tier.max_uploads
        over_size = (
            tier.max_total_bytes is not None
            and entry.total_size_bytes + file_size > tier.max_total_bytes
        )
        if not (over_count or over_size):
            return None

        reset_at = entry.reset_at(tier)
        if over_count:
            reason = f"Rate limit exceeded ({tier.name}): {tier.description or f'{tier.max_uploads} uploads per window'}"
        else:
            reason = (
                f"Upload size limit exceeded ({tier.name}): "
                f"{round(tier.max_total_bytes / MIB)}MB per {int(tier.window_seconds // 60)} minutes"
            )
        return RateLimitDecision(
            allowed=False,
            tier=tier.name,
            limit=tier.max_uploads,
            remaining=0,
            reset_at=reset_at,
            reason=reason,
            retry_after=max(1, math.ceil(reset_at - now)),
        )

    def _record(self, check: _TierCheck, now: float, file_size: int) -> None:
        entry = check.entry
        if entry is None or entry.expired(check.tier, now):
            entry = RateLimitEntry(
                count=1,
                total_size_bytes=file_size,
                first_request_at=now,
                last_request_at=now,
                suspicious_flag=check.tier is self.config.suspicious,
            )
        else:
            entry.count += 1
            entry.total_size_bytes += file_size
            entry.last_request_at = now
        self.store.put(check.tier.name, check.key, entry)

    def mark_suspicious(self, identifier: str, duration_seconds: float | None = None) -> None:
        duration = self.config.suspicious_duration_seconds if duration_seconds is None else duration_seconds
        with self._suspicious_guard:
            self._suspicious[identifier] = self._clock() + duration
        logger.warning("Identity marked as suspicious for %ss: %s", int(duration), identifier)

    def is_suspicious(self, identifier: str, now: float | None = None) -> bool:
        now = self._clock() if now is None else now
        with self._suspicious_guard:
            expires_at = self._suspicious.get(identifier)
            if expires_at is None:
                return False
            if expires_at <= now:
                del self._suspicious[identifier]
                logger.info("Suspicious status removed for: %s", identifier)
                return False
            return True

    def _suspicious_identity(self, ip_address: str, user_id: str | None, now: float) -> str | None:
        if user_id and self.is_suspicious(user_id, now):
            return user_id
        if self.is_suspicious(ip_address, now):
            return ip_address
        return None

    def status(self, identifier: str) -> dict:
        tiers = {}
        for tier in self.config.tiers():
            entry = self.store.get(tier.name, identifier)
            if entry is not None:
                tiers[tier.name] = {
                    "count": entry.count,
                    "total_size_bytes": entry.total_size_bytes,
                    "first_request_at": entry.first_request_at,
                    "last_request_at": entry.last_request_at,
                    "reset_at": entry.reset_at(tier),
                }
        return {"identifier": identifier, "tiers": tiers, "is_suspicious": self.is_suspicious(identifier)}

    def cleanup_expired(self) -> int:
        now = self._clock()
        windows = {tier.name: tier for tier in self.config.tiers()}
        removed = 0
        for tier_name, key, entry in self.store.items():
            tier = windows.get(tier_name)
            if tier is None or not entry.expired(tier, now):
                continue
            locks = self._locks.acquire_all([key])
            try:
                # Re-read under the identity lock; a request may have refreshed it.
                current = self.store.get(tier_name, key)
                if current is not None and current.expired(tier, now):
                    self.store.delete(tier_name, key)
                    removed += 1
            finally:
                self._locks.release_all(locks)

        with self._suspicious_guard:
            lapsed = [ident for ident, expires_at in self._suspicious.items() if expires_at <= now]
            for ident in lapsed:
                del self._suspicious[ident]

        if removed:
            logger.info("Cleaned up %d expired rate limit entries", removed)
        return removed
