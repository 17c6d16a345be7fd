import math
from datetime import datetime, timezone
from typing import NoReturn

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.exc import SQLAlchemyError

from booking_backend.auth.dependencies import get_current_user
from booking_backend.core.errors import BookingError, RateLimitError
from booking_backend.database import ensure_booking_schema
from booking_backend.models.user import User
from booking_backend.services.notifications import NotificationDispatcher, get_notification_dispatcher
from booking_backend.services.rate_limiter import get_rate_limiter


def ensure_database_ready() -> None:
    try:
        ensure_booking_schema()
    except SQLAlchemyError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={'kind': 'persistence_error', 'message': 'Database unavailable.'},
        ) from exc


def raise_http_error(exc: BookingError) -> NoReturn:
    headers = None
    if isinstance(exc, RateLimitError):
        retry_after = math.ceil((exc.reset_at - datetime.now(timezone.utc)).total_seconds())
        headers = {'Retry-After': str(max(1, retry_after))}
    raise HTTPException(status_code=exc.status_code, detail=exc.to_detail(), headers=headers) from exc


def get_dispatcher() -> NotificationDispatcher:
    return get_notification_dispatcher()


def client_address(request: Request) -> str:
    forwarded = request.headers.get('x-forwarded-for')
    if forwarded:
        return forwarded.split(',')[0].strip()
    if request.client is not None:
        return request.client.host
    return 'unknown'


def enforce_rate_limit(key: str, window_ms: int, max_requests: int) -> None:
    try:
        get_rate_limiter().check_and_increment(key, window_ms, max_requests)
    except BookingError as exc:
        raise_http_error(exc)


def limit_by_client(scope: str, window_ms: int, max_requests: int):
    """Rate limit keyed by client IP, for public queries."""
    def dependency(request: Request) -> None:
        enforce_rate_limit(f'{scope}:ip:{client_address(request)}', window_ms, max_requests)

    return dependency


def limit_by_user(scope: str, window_ms: int, max_requests: int):
    """Rate limit keyed by authenticated user and route, for mutations."""
    def dependency(current_user: User = Depends(get_current_user)) -> None:
        enforce_rate_limit(f'{scope}:user:{current_user.id}', window_ms, max_requests)

    return dependency
