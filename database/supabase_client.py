import httpx
from supabase import AsyncClient, AsyncClientOptions, acreate_client

from perks.core.config import settings

# Process-wide service client (secret key, bypasses row-level policies)
_service_client: AsyncClient | None = None


def _require_credentials(key: str) -> None:
    if not settings.supabase_url or not key:
        raise RuntimeError(
            "Supabase credentials not configured. "
            "Set SUPABASE_URL and SUPABASE_PUBLISHABLE_KEY / SUPABASE_SECRET_KEY environment variables."
        )


async def get_service_client() -> AsyncClient:
    """Get the shared service-role Supabase client.

    Only used for connectivity checks. Store and customer data are always read
    through a user client so row-level policies apply.
    """
    global _service_client
    _require_credentials(settings.supabase_secret_key)

    if _service_client is None:
        _service_client = await acreate_client(
            settings.supabase_url,
            settings.supabase_secret_key,
        )
    return _service_client


async def create_user_client(
    access_token: str, http_client: httpx.AsyncClient | None = None
) -> AsyncClient:
    """Create a Supabase client acting as the signed-in user.

    The user's JWT is sent on PostgREST and Edge Function calls, and handed to
    Realtime so postgres_changes subscriptions respect row-level policies.
    When `http_client` is given, PostgREST and Edge Function calls go through
    it and its owner closes it.
    """
    _require_credentials(settings.supabase_publishable_key)

    client = await acreate_client(
        settings.supabase_url,
        settings.supabase_publishable_key,
        options=AsyncClientOptions(
            headers={"Authorization": f"Bearer {access_token}"},
            httpx_client=http_client,
        ),
    )
    await client.realtime.set_auth(access_token)
    return client
