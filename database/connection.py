import asyncio
import functools
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, TypeVar

import httpx
from supabase import AsyncClient

from perks.core.config import settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def init_db():
    """Initialize database connection - verify Supabase connection.

    Note: Schema is managed via Supabase migrations, not here.
    """
    if not settings.supabase_url or not settings.supabase_secret_key:
        logger.warning("Supabase credentials not configured. Database features disabled.")
        return

    try:
        from .supabase_client import get_service_client
        client = await get_service_client()
        # Try a simple query - may fail if migrations haven't run yet
        await client.table("stores").select("id").limit(1).execute()
        logger.info("Supabase connection verified")
    except Exception as e:
        logger.warning(f"Supabase connection check failed: {e}")
        logger.warning("Make sure migrations have been run and credentials are correct.")


async def get_db(access_token: str, http_client: httpx.AsyncClient | None = None) -> AsyncClient:
    """Get a database client acting as the given user."""
    from .supabase_client import create_user_client
    return await create_user_client(access_token, http_client)


@asynccontextmanager
async def request_db(access_token: str) -> AsyncIterator[AsyncClient]:
    """A user client for one request. Its HTTP connections are closed on exit."""
    async with httpx.AsyncClient(
        timeout=settings.supabase_http_timeout_seconds, follow_redirects=True
    ) as http_client:
        yield await get_db(access_token, http_client)


def with_retry(
    max_retries: int = 2, delay: float = 0.1
) -> Callable[[Callable[..., Awaitable[T]]], Callable[..., Awaitable[T]]]:
    """Decorator that retries read operations on connection errors.

    Handles transient HTTP connection errors like "Server disconnected".
    Never apply it to stamp or redemption calls: a retried mutation could
    land twice.

    Args:
        max_retries: Maximum number of retry attempts (default 2)
        delay: Delay in seconds between retries (default 0.1)
    """
    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @functools.wraps(func)
        async def wrapper(*args, **kwargs) -> T:
            last_error = None
            for attempt in range(max_retries + 1):
                try:
                    return await func(*args, **kwargs)
                except (httpx.RemoteProtocolError, httpx.ConnectError) as e:
                    last_error = e
                    if attempt < max_retries:
                        logger.warning(
                            f"Connection error in {func.__name__}, retrying ({attempt + 1}/{max_retries}): {e}"
                        )
                        await asyncio.sleep(delay)
                    else:
                        logger.error(f"Connection error in {func.__name__} after {max_retries} retries: {e}")
                        raise
            raise last_error  # Should never reach here, but for type safety
        return wrapper
    return decorator
