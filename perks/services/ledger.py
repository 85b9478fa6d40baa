"""
Remote ledger client.

The only place where stamp, redemption and analytics operations cross into
Supabase Edge Functions. Calls are made exactly once: a failed call is
surfaced to the caller and retrying is left to the user.
"""

import json
import logging
from typing import Any, Optional

import httpx
from supabase import AsyncClient, FunctionsError

from perks.core.config import settings
from perks.core.errors import RemoteCallError
from perks.domain.schemas import AnalyticsSnapshot, CustomerSegments

logger = logging.getLogger(__name__)


def _decode(raw: Any) -> Any:
    """Edge functions answer with JSON, an empty body, or (rarely) plain text."""
    if raw is None or isinstance(raw, (dict, list)):
        return raw
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8", errors="replace")
    if not raw.strip():
        return None
    try:
        return json.loads(raw)
    except ValueError:
        return raw


def _error_message(error: Any) -> Optional[str]:
    if isinstance(error, str):
        return error
    if isinstance(error, dict):
        return error.get("message") or error.get("error")
    return None


class RemoteLedgerClient:
    """Invokes the stamp/redeem/analytics functions as the signed-in user."""

    def __init__(self, client: AsyncClient, generic_error: str | None = None):
        self._client = client
        self._generic_error = generic_error or settings.generic_error_message

    async def _invoke(self, function_name: str, body: dict) -> Any:
        logger.info(f"Invoking {function_name} with {body}")
        try:
            raw = await self._client.functions.invoke(
                function_name,
                invoke_options={"body": body},
            )
        except FunctionsError as e:
            message = getattr(e, "message", None) or str(e)
            logger.warning(f"{function_name} failed: {message}")
            raise RemoteCallError(message or self._generic_error) from e
        except httpx.HTTPError as e:
            logger.error(f"{function_name} transport error: {e}")
            raise RemoteCallError(self._generic_error) from e

        data = _decode(raw)
        # Business-rule rejections come back as 200 with {"error": ...}
        if isinstance(data, dict) and data.get("error"):
            message = _error_message(data["error"]) or self._generic_error
            logger.warning(f"{function_name} rejected: {message}")
            raise RemoteCallError(message)
        return data

    async def add_stamp(
        self,
        loyalty_card_id: str,
        store_id: str,
        undo: bool = False,
        location_id: str | None = None,
    ) -> dict | None:
        """Apply (or, with undo=True, reverse) exactly one stamp on a card.

        Returns the updated card row when the function sends one back.
        """
        body = {"loyalty_card_id": loyalty_card_id, "storeId": store_id, "undo": undo}
        if location_id:
            body["locationId"] = location_id
        data = await self._invoke(settings.add_stamp_function, body)
        return data if isinstance(data, dict) else None

    async def redeem_reward(
        self,
        loyalty_card_id: str,
        reward_id: str,
        undo: bool = False,
    ) -> dict | None:
        """Redeem (or, with undo=True, un-redeem) a reward on a card."""
        body = {"loyalty_card_id": loyalty_card_id, "reward_id": reward_id, "undo": undo}
        data = await self._invoke(settings.redeem_reward_function, body)
        return data if isinstance(data, dict) else None

    async def fetch_analytics(self, store_id: str) -> AnalyticsSnapshot:
        """Get the aggregate metrics snapshot for a store."""
        data = await self._invoke(settings.analytics_function, {"store_id": store_id})
        if not isinstance(data, dict):
            raise RemoteCallError(self._generic_error)
        return AnalyticsSnapshot(**data)

    async def fetch_customer_segments(self, store_id: str) -> CustomerSegments:
        """Get new/loyal/VIP/at-risk customer counts for a store."""
        data = await self._invoke(settings.segments_function, {"store_id": store_id})
        if not isinstance(data, dict):
            raise RemoteCallError(self._generic_error)
        return CustomerSegments(**data)
