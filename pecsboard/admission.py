"""Admission control: sliding-window rate limits and daily quotas.

Counters live in the database (``rate_limit_log`` and ``daily_usage``) so
every worker process sees the same numbers. The sliding window inserts a hit
and then counts hits in the window; the two statements are not atomic, so two
simultaneous requests may both be admitted at the boundary.
The daily quota is a single upsert-and-return statement and never races.
"""

from __future__ import annotations

import logging
import math
import random
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Callable, Optional, Protocol, Union

from sqlalchemy import delete, func, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from .config import EndpointLimit
from .db import DailyUsage, RateLimitLog, now_utc
from .errors import DependencyUnavailable, QuotaExceeded, RateLimited
from .utils import seconds_until_next_day

logger = logging.getLogger("pecsboard.admission")

GLOBAL_USER_ID = "__global__"
HIT_RETENTION = timedelta(minutes=5)
USAGE_RETENTION = timedelta(days=7)


@dataclass(frozen=True)
class Admission:
    allowed: bool
    retry_after: Optional[int] = None
    quota: bool = False


ALLOWED = Admission(True)


class CounterStore(Protocol):
    def record_hit(self, user_id: str, endpoint: str, at: datetime) -> None:
        ...

    def count_hits(self, user_id: str, endpoint: str, since: datetime) -> int:
        ...

    def increment_daily(self, user_id: str, endpoint: str, day: date) -> int:
        """Add one to the day's counter and return the new value."""
        ...

    def purge(self, hits_before: datetime, usage_before: date) -> None:
        ...


class SqlCounterStore:
    """Counter store over ``rate_limit_log``/``daily_usage``.

    Each call runs in its own short session so no transaction or lock is
    held across the request.
    """

    def __init__(self, session_factory: sessionmaker) -> None:
        self.session_factory = session_factory

    def record_hit(self, user_id: str, endpoint: str, at: datetime) -> None:
        try:
            with self.session_factory() as session:
                session.add(RateLimitLog(user_id=user_id, endpoint=endpoint, created_at=at))
                session.commit()
        except SQLAlchemyError as exc:
            raise DependencyUnavailable("counter store unavailable") from exc

    def count_hits(self, user_id: str, endpoint: str, since: datetime) -> int:
        stmt = select(func.count(RateLimitLog.id)).where(
            RateLimitLog.user_id == user_id,
            RateLimitLog.endpoint == endpoint,
            RateLimitLog.created_at >= since,
        )
        try:
            with self.session_factory() as session:
                return session.execute(stmt).scalar_one()
        except SQLAlchemyError as exc:
            raise DependencyUnavailable("counter store unavailable") from exc

    def increment_daily(self, user_id: str, endpoint: str, day: date) -> int:
        try:
            with self.session_factory() as session:
                stmt = self._upsert(session.get_bind().dialect.name, user_id, endpoint, day)
                count = session.execute(stmt).scalar_one()
                session.commit()
                return count
        except SQLAlchemyError as exc:
            raise DependencyUnavailable("quota store unavailable") from exc

    def purge(self, hits_before: datetime, usage_before: date) -> None:
        try:
            with self.session_factory() as session:
                session.execute(delete(RateLimitLog).where(RateLimitLog.created_at < hits_before))
                session.execute(delete(DailyUsage).where(DailyUsage.usage_date < usage_before))
                session.commit()
        except SQLAlchemyError as exc:
            raise DependencyUnavailable("counter store unavailable") from exc

    @staticmethod
    def _upsert(dialect_name: str, user_id: str, endpoint: str, day: date):
        if dialect_name == "postgresql":
            insert = postgresql.insert
        elif dialect_name == "sqlite":
            insert = sqlite.insert
        else:
            raise DependencyUnavailable(f"no atomic upsert for dialect {dialect_name!r}")
        table = DailyUsage.__table__
        stmt = insert(table).values(user_id=user_id, endpoint=endpoint, usage_date=day, count=1)
        stmt = stmt.on_conflict_do_update(
            index_elements=["user_id", "endpoint", "usage_date"],
            set_={"count": table.c["count"] + 1},
        )
        return stmt.returning(table.c["count"])


Scheduler = Callable[[Callable[[], None]], None]


def _run_inline(job: Callable[[], None]) -> None:
    job()


class AdmissionController:
    """Admits or rejects requests per user and endpoint.

    When the counter store is unreachable the controller fails open and
    the request is allowed.
    """

    def __init__(
        self,
        store: CounterStore,
        clock: Callable[[], datetime] = now_utc,
        rng: Optional[random.Random] = None,
        cleanup_probability: float = 0.05,
        run_cleanup: Scheduler = _run_inline,
    ) -> None:
        self.store = store
        self.clock = clock
        self.rng = rng or random.Random()
        self.cleanup_probability = cleanup_probability
        self.run_cleanup = run_cleanup

    def admit(
        self,
        user_id: str,
        endpoint: str,
        max_requests: int,
        window: Union[timedelta, float],
        schedule: Optional[Scheduler] = None,
    ) -> Admission:
        if not isinstance(window, timedelta):
            window = timedelta(seconds=window)
        self._maybe_cleanup(schedule)
        now = self.clock()
        try:
            self.store.record_hit(user_id, endpoint, now)
            count = self.store.count_hits(user_id, endpoint, now - window)
        except DependencyUnavailable:
            logger.warning("rate limit check failed open for %s on %s", user_id, endpoint, exc_info=True)
            return ALLOWED
        if count > max_requests:
            retry_after = max(1, math.ceil(window.total_seconds()))
            logger.info("rate limited %s on %s (%d > %d)", user_id, endpoint, count, max_requests)
            return Admission(False, retry_after=retry_after)
        return ALLOWED

    def admit_daily(self, user_id: str, endpoint: str, max_per_day: int) -> Admission:
        now = self.clock()
        try:
            count = self.store.increment_daily(user_id, endpoint, now.date())
        except DependencyUnavailable:
            logger.warning("daily quota check failed open for %s on %s", user_id, endpoint, exc_info=True)
            return ALLOWED
        if count > max_per_day:
            logger.info("daily quota exceeded for %s on %s (%d > %d)", user_id, endpoint, count, max_per_day)
            return Admission(False, retry_after=seconds_until_next_day(now), quota=True)
        return ALLOWED

    def admit_global_daily(self, endpoint: str, max_per_day: int) -> Admission:
        return self.admit_daily(GLOBAL_USER_ID, endpoint, max_per_day)

    def enforce(
        self,
        user_id: str,
        endpoint: str,
        limit: EndpointLimit,
        schedule: Optional[Scheduler] = None,
    ) -> None:
        """Apply every limit configured for ``endpoint``; raise on the first rejection.

        ``schedule`` queues the occasional counter sweep, usually the
        request's background tasks, so the sweep runs after the response.
        """
        checks = [lambda: self.admit(user_id, endpoint, limit.max_requests, limit.window_seconds, schedule)]
        if limit.daily_max is not None:
            checks.append(lambda: self.admit_daily(user_id, endpoint, limit.daily_max))
        if limit.global_daily_max is not None:
            checks.append(lambda: self.admit_global_daily(endpoint, limit.global_daily_max))
        for check in checks:
            result = check()
            if result.allowed:
                continue
            if result.quota:
                raise QuotaExceeded(result.retry_after, "Daily limit reached. Please try again tomorrow.")
            raise RateLimited(result.retry_after)

    def cleanup(self) -> None:
        now = self.clock()
        try:
            self.store.purge(now - HIT_RETENTION, (now - USAGE_RETENTION).date())
        except Exception:
            logger.warning("admission counter cleanup failed", exc_info=True)

    def _maybe_cleanup(self, schedule: Optional[Scheduler] = None) -> None:
        if self.rng.random() >= self.cleanup_probability:
            return
        try:
            (schedule or self.run_cleanup)(self.cleanup)
        except Exception:
            logger.warning("could not start admission counter cleanup", exc_info=True)
