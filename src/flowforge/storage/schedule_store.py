"""Schedule records and their stores."""
import random
import string
import threading
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import ContextManager, Iterator

import redis
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from flowforge.config import get_settings
from flowforge.observability import get_logger

logger = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_schedule_id() -> str:
    """``schedule_{epoch ms}_{9 random chars}``."""
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"schedule_{int(time.time() * 1000)}_{suffix}"


class Schedule(BaseModel):
    """
    Cron schedule of one workflow.

    The schedule owns the handle of its pending delayed job
    (``armed_job_id``); it is None while the schedule is disarmed.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str = Field(default_factory=generate_schedule_id)
    workflow_id: str
    cron_expression: str
    timezone: str = "UTC"
    is_active: bool = True
    next_execution: datetime | None = None
    last_execution: datetime | None = None
    execution_count: int = 0
    armed_job_id: str | None = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class ScheduleStore(ABC):
    """Persistence for schedules, with named locks shared by every scheduler instance."""

    @abstractmethod
    def save(self, schedule: Schedule) -> None:
        """Insert or replace a schedule."""

    @abstractmethod
    def get(self, schedule_id: str) -> Schedule | None:
        """Schedule by id."""

    @abstractmethod
    def delete(self, schedule_id: str) -> bool:
        """Delete a schedule; False when unknown."""

    @abstractmethod
    def list_schedules(self, workflow_id: str | None = None) -> list[Schedule]:
        """Schedules ordered by creation time, optionally for one workflow."""

    @abstractmethod
    def lock(self, name: str) -> ContextManager:
        """Mutual exclusion on ``name`` (e.g. ``schedule:{id}``)."""


class InMemoryScheduleStore(ScheduleStore):
    """Process-local schedule store."""

    def __init__(self) -> None:
        self._schedules: dict[str, Schedule] = {}
        self._guard = threading.Lock()
        self._locks: dict[str, threading.RLock] = {}

    def save(self, schedule: Schedule) -> None:
        with self._guard:
            self._schedules[schedule.id] = schedule.model_copy(deep=True)

    def get(self, schedule_id: str) -> Schedule | None:
        with self._guard:
            schedule = self._schedules.get(schedule_id)
            return schedule.model_copy(deep=True) if schedule else None

    def delete(self, schedule_id: str) -> bool:
        with self._guard:
            return self._schedules.pop(schedule_id, None) is not None

    def list_schedules(self, workflow_id: str | None = None) -> list[Schedule]:
        with self._guard:
            schedules = [
                s.model_copy(deep=True)
                for s in self._schedules.values()
                if workflow_id is None or s.workflow_id == workflow_id
            ]
        return sorted(schedules, key=lambda s: s.created_at)

    @contextmanager
    def lock(self, name: str) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(name, threading.RLock())
        with lock:
            yield


class RedisScheduleStore(ScheduleStore):
    """Redis-backed schedule store shared by scheduler instances."""

    def __init__(
        self,
        redis_client: redis.Redis | None = None,
        key_prefix: str | None = None,
        lock_timeout_s: float = 30,
    ):
        """
        Initialize schedule store.

        Args:
            redis_client: Optional Redis client (will create one if not provided)
            key_prefix: Key namespace (defaults to settings.key_prefix)
            lock_timeout_s: Expiry of named locks
        """
        settings = get_settings()
        if redis_client is None:
            self.redis_client = redis.from_url(settings.redis_url, decode_responses=True)
        else:
            self.redis_client = redis_client

        prefix = key_prefix or settings.key_prefix
        self._schedule_prefix = f"{prefix}:schedule:"
        self._index_key = f"{prefix}:schedules"
        self._lock_prefix = f"{prefix}:lock:"
        self._lock_timeout_s = lock_timeout_s

    def _schedule_key(self, schedule_id: str) -> str:
        """Get Redis key for schedule."""
        return f"{self._schedule_prefix}{schedule_id}"

    def save(self, schedule: Schedule) -> None:
        pipe = self.redis_client.pipeline()
        pipe.set(self._schedule_key(schedule.id), schedule.model_dump_json(by_alias=True))
        pipe.sadd(self._index_key, schedule.id)
        pipe.execute()

    def get(self, schedule_id: str) -> Schedule | None:
        data = self.redis_client.get(self._schedule_key(schedule_id))
        if data is None:
            return None
        return Schedule.model_validate_json(data)

    def delete(self, schedule_id: str) -> bool:
        pipe = self.redis_client.pipeline()
        pipe.delete(self._schedule_key(schedule_id))
        pipe.srem(self._index_key, schedule_id)
        deleted, _ = pipe.execute()
        return bool(deleted)

    def list_schedules(self, workflow_id: str | None = None) -> list[Schedule]:
        schedules = []
        for schedule_id in self.redis_client.smembers(self._index_key):
            schedule = self.get(schedule_id)
            if schedule is None:
                logger.warning("Schedule index entry without record", extra={"schedule_id": schedule_id})
                continue
            if workflow_id is None or schedule.workflow_id == workflow_id:
                schedules.append(schedule)
        return sorted(schedules, key=lambda s: s.created_at)

    def lock(self, name: str) -> ContextManager:
        return self.redis_client.lock(
            f"{self._lock_prefix}{name}",
            timeout=self._lock_timeout_s,
            blocking_timeout=self._lock_timeout_s,
        )
