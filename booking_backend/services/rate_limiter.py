"""Fixed-window rate limiting keyed by caller identity.

Callers depend on the ``RateLimiter`` interface only. ``InMemoryRateLimiter``
keeps counters in this process; ``DatabaseRateLimiter`` keeps them in the
shared database so every app instance sees the same windows. Expired windows
are reset lazily the next time their key is checked.
"""

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from threading import Lock
from typing import Callable

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from booking_backend.core import config
from booking_backend.core.errors import PersistenceError, RateLimitError
from booking_backend.database import SessionLocal
from booking_backend.models.rate_limit import RateLimitWindow

logger = logging.getLogger(__name__)


def _from_epoch_ms(epoch_ms: int) -> datetime:
    return datetime.fromtimestamp(epoch_ms / 1000, tz=timezone.utc)


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    count: int
    limit: int
    reset_at: datetime

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.count)


def _reject(key: str, max_requests: int, reset_at_ms: int) -> RateLimitError:
    reset_at = _from_epoch_ms(reset_at_ms)
    logger.warning('Rate limit of %d exceeded for %s until %s.', max_requests, key, reset_at.isoformat())
    return RateLimitError(
        f'Rate limit exceeded. Try again after {reset_at.strftime("%H:%M:%S")} UTC.',
        reset_at=reset_at,
    )


def _check_arguments(window_ms: int, max_requests: int) -> None:
    if window_ms <= 0 or max_requests < 1:
        raise ValueError('window_ms must be positive and max_requests at least 1.')


class RateLimiter(ABC):
    @abstractmethod
    def check_and_increment(self, key: str, window_ms: int, max_requests: int) -> RateLimitResult:
        """Count one request for ``key``; raise ``RateLimitError`` once the window is full."""


class InMemoryRateLimiter(RateLimiter):
    """Process-local counters. Not shared between app instances.

    Expired windows are dropped when their key is next seen, and every
    ``sweep_every`` calls all expired windows are dropped at once.
    """

    def __init__(self, clock: Callable[[], float] = time.time, sweep_every: int = 100):
        self._clock = clock
        self._windows: dict[str, list[int]] = {}
        self._lock = Lock()
        self._sweep_every = max(1, sweep_every)
        self._calls = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._windows)

    def check_and_increment(self, key: str, window_ms: int, max_requests: int) -> RateLimitResult:
        _check_arguments(window_ms, max_requests)
        now_ms = int(self._clock() * 1000)

        with self._lock:
            self._calls += 1
            if self._calls % self._sweep_every == 0:
                self._drop_expired(now_ms)

            window = self._windows.get(key)
            if window is not None and window[1] <= now_ms:
                del self._windows[key]
                window = None
            if window is None:
                window = [0, now_ms + window_ms]
                self._windows[key] = window

            if window[0] >= max_requests:
                raise _reject(key, max_requests, window[1])

            window[0] += 1
            return RateLimitResult(allowed=True, count=window[0], limit=max_requests, reset_at=_from_epoch_ms(window[1]))

    def _drop_expired(self, now_ms: int) -> None:
        expired = [key for key, window in self._windows.items() if window[1] <= now_ms]
        for key in expired:
            del self._windows[key]
        if expired:
            logger.debug('Dropped %d expired rate limit windows.', len(expired))


class DatabaseRateLimiter(RateLimiter):
    """Counters in the ``rate_limit_windows`` table, updated with single atomic statements."""

    max_attempts = 3

    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        clock: Callable[[], float] = time.time,
    ):
        self.session_factory = session_factory
        self._clock = clock

    def check_and_increment(self, key: str, window_ms: int, max_requests: int) -> RateLimitResult:
        _check_arguments(window_ms, max_requests)
        now_ms = int(self._clock() * 1000)

        db = self.session_factory()
        try:
            for _ in range(self.max_attempts):
                try:
                    result = self._increment(db, key, window_ms, max_requests, now_ms)
                except IntegrityError:
                    # Another request created the row first; the next pass updates it.
                    db.rollback()
                    continue
                if result is not None:
                    return result
            raise PersistenceError('Could not update the rate limit counter.')
        except SQLAlchemyError as exc:
            db.rollback()
            logger.exception('Database failure while updating rate limit for %s.', key)
            raise PersistenceError('Rate limit store unavailable.') from exc
        finally:
            db.close()

    def _increment(
        self,
        db: Session,
        key: str,
        window_ms: int,
        max_requests: int,
        now_ms: int,
    ) -> RateLimitResult | None:
        in_window = db.query(RateLimitWindow).filter(
            RateLimitWindow.key == key,
            RateLimitWindow.reset_at_ms > now_ms,
            RateLimitWindow.count < max_requests,
        ).update({RateLimitWindow.count: RateLimitWindow.count + 1}, synchronize_session=False)
        if in_window:
            window = db.query(RateLimitWindow).filter(RateLimitWindow.key == key).one()
            result = RateLimitResult(
                allowed=True,
                count=window.count,
                limit=max_requests,
                reset_at=_from_epoch_ms(window.reset_at_ms),
            )
            db.commit()
            return result

        reset_at_ms = now_ms + window_ms
        restarted = db.query(RateLimitWindow).filter(
            RateLimitWindow.key == key,
            RateLimitWindow.reset_at_ms <= now_ms,
        ).update(
            {RateLimitWindow.count: 1, RateLimitWindow.reset_at_ms: reset_at_ms},
            synchronize_session=False,
        )
        if restarted:
            db.commit()
            return RateLimitResult(allowed=True, count=1, limit=max_requests, reset_at=_from_epoch_ms(reset_at_ms))

        window = db.query(RateLimitWindow).filter(RateLimitWindow.key == key).first()
        if window is None:
            db.add(RateLimitWindow(key=key, count=1, reset_at_ms=reset_at_ms))
            db.commit()
            return RateLimitResult(allowed=True, count=1, limit=max_requests, reset_at=_from_epoch_ms(reset_at_ms))

        if window.reset_at_ms > now_ms and window.count >= max_requests:
            db.rollback()
            raise _reject(key, max_requests, window.reset_at_ms)

        # The row changed between statements; try again.
        db.rollback()
        return None


_limiter_lock = Lock()
_rate_limiter: RateLimiter | None = None


def build_rate_limiter(backend: str = config.RATE_LIMIT_BACKEND) -> RateLimiter:
    if backend == 'database':
        return DatabaseRateLimiter()
    if backend == 'memory':
        return InMemoryRateLimiter()
    raise ValueError(f'Unknown rate limit backend {backend!r}.')


def get_rate_limiter() -> RateLimiter:
    global _rate_limiter

    if _rate_limiter is not None:
        return _rate_limiter

    with _limiter_lock:
        if _rate_limiter is None:
            _rate_limiter = build_rate_limiter()
        return _rate_limiter
