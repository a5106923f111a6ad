import logging
import os
import threading
import time
import zlib
from dataclasses import dataclass, field
from typing import Callable, Optional, Protocol

from sqlalchemy.exc import SQLAlchemyError

from app.core.health_twin import HealthTwinProfile, create_empty_profile
from app.services.session_memory import SESSION_MEMORY_SHARDS, SESSION_MEMORY_TTL_SECONDS, BackgroundWriter

logger = logging.getLogger("uvicorn.error")

PROFILE_CACHE_TTL_SECONDS = int(os.getenv("PROFILE_CACHE_TTL_SECONDS", str(SESSION_MEMORY_TTL_SECONDS)))


class DurableProfileStore(Protocol):
    def get(self, user_id: str) -> Optional[HealthTwinProfile]:
        ...

    def save(self, user_id: str, profile: HealthTwinProfile) -> bool:
        ...


@dataclass
class _ProfileEntry:
    profile: HealthTwinProfile
    last_active_at: float
    version: int = 0
    saved_version: int = 0
    save_lock: threading.Lock = field(default_factory=threading.Lock)

    @property
    def dirty(self) -> bool:
        return self.saved_version < self.version


@dataclass
class _Shard:
    lock: threading.Lock = field(default_factory=threading.Lock)
    entries: dict[str, _ProfileEntry] = field(default_factory=dict)


class ProfileMemoryStore:
    """Authoritative in-process copy of each user's Health Twin.

    Turns apply their updates to the cached profile under the shard lock, so two turns for one
    user never overwrite each other's additions. A save always writes the newest cached version.
    Entries whose newest version is not stored yet are never evicted; ``flush_dirty`` writes them.
    """

    def __init__(
        self,
        durable: DurableProfileStore,
        writer: Optional[BackgroundWriter] = None,
        ttl_seconds: int = PROFILE_CACHE_TTL_SECONDS,
        shard_count: int = SESSION_MEMORY_SHARDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.durable = durable
        self.writer = writer
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._shards = [_Shard() for _ in range(max(1, shard_count))]

    def _shard(self, user_id: str) -> _Shard:
        return self._shards[zlib.crc32(user_id.encode("utf-8")) % len(self._shards)]

    def _entry(self, user_id: str) -> Optional[_ProfileEntry]:
        shard = self._shard(user_id)
        with shard.lock:
            entry = shard.entries.get(user_id)
            if entry is not None:
                entry.last_active_at = self._clock()
                return entry
        try:
            stored = self.durable.get(user_id)
        except SQLAlchemyError as exc:
            logger.warning("profile_cache_load_error user_id=%s detail=%s", user_id, str(exc)[:220])
            return None
        with shard.lock:
            # An entry cached meanwhile by another turn wins over the stored copy.
            return shard.entries.setdefault(
                user_id,
                _ProfileEntry(profile=stored or create_empty_profile(), last_active_at=self._clock()),
            )

    def load(self, user_id: str) -> HealthTwinProfile:
        entry = self._entry(user_id)
        return entry.profile if entry is not None else create_empty_profile()

    def update(
        self, user_id: str, change: Callable[[HealthTwinProfile], HealthTwinProfile]
    ) -> Optional[HealthTwinProfile]:
        """Apply ``change`` to the current profile and schedule a save. None if the profile is unavailable."""
        entry = self._entry(user_id)
        if entry is None:
            logger.warning("profile_update_skipped user_id=%s reason=store_unavailable", user_id)
            return None
        shard = self._shard(user_id)
        with shard.lock:
            entry.profile = change(entry.profile)
            entry.version += 1
            entry.last_active_at = self._clock()
            profile = entry.profile
        if self.writer is None:
            self._save(user_id)
        else:
            self.writer.submit(("profile", user_id), lambda: self._save(user_id))
        return profile

    def _save(self, user_id: str) -> bool:
        shard = self._shard(user_id)
        with shard.lock:
            entry = shard.entries.get(user_id)
        if entry is None:
            return True
        with entry.save_lock:
            with shard.lock:
                if not entry.dirty:
                    return True
                profile, version = entry.profile, entry.version
            ok = self.durable.save(user_id, profile)
            if ok:
                with shard.lock:
                    entry.saved_version = max(entry.saved_version, version)
        return ok

    def flush_dirty(self) -> int:
        """Synchronously save every profile whose newest version is not stored yet."""
        dirty: list[str] = []
        for shard in self._shards:
            with shard.lock:
                dirty.extend(user_id for user_id, entry in shard.entries.items() if entry.dirty)
        return sum(1 for user_id in dirty if self._save(user_id))

    def sweep_expired(self, now: Optional[float] = None) -> int:
        cutoff = (self._clock() if now is None else now) - self.ttl_seconds
        removed = 0
        for shard in self._shards:
            with shard.lock:
                expired = [
                    user_id
                    for user_id, entry in shard.entries.items()
                    if entry.last_active_at < cutoff and not entry.dirty
                ]
                for user_id in expired:
                    del shard.entries[user_id]
                removed += len(expired)
        return removed

    def cached_count(self) -> int:
        total = 0
        for shard in self._shards:
            with shard.lock:
                total += len(shard.entries)
        return total
