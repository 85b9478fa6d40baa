import httpx
import pytest
from supabase import FunctionsHttpError

from perks.core.errors import RemoteCallError
from perks.services.ledger import RemoteLedgerClient

from tests.conftest import CARD_ID, REWARD_ID, STORE_ID


@pytest.mark.asyncio
async def test_add_stamp_sends_card_store_and_undo_flag(backend, supabase) -> None:
    ledger = RemoteLedgerClient(supabase)

    row = await ledger.add_stamp(CARD_ID, STORE_ID)
    await ledger.add_stamp(CARD_ID, STORE_ID, undo=True, location_id="loc-9")

    assert row == {"id": CARD_ID, "stamps": 5}
    assert backend.calls == [
        ("add-stamp-manually", {"loyalty_card_id": CARD_ID, "storeId": STORE_ID, "undo": False}),
        (
            "add-stamp-manually",
            {"loyalty_card_id": CARD_ID, "storeId": STORE_ID, "undo": True, "locationId": "loc-9"},
        ),
    ]


@pytest.mark.asyncio
async def test_redeem_sends_reward(backend, supabase) -> None:
    backend.cards[CARD_ID]["stamps"] = 10
    ledger = RemoteLedgerClient(supabase)

    await ledger.redeem_reward(CARD_ID, REWARD_ID)

    assert backend.calls == [
        ("redeem-reward", {"loyalty_card_id": CARD_ID, "reward_id": REWARD_ID, "undo": False})
    ]


@pytest.mark.asyncio
async def test_error_body_raises_with_message(backend, supabase) -> None:
    backend.errors.append("Card not found")
    ledger = RemoteLedgerClient(supabase)

    with pytest.raises(RemoteCallError) as exc_info:
        await ledger.add_stamp(CARD_ID, STORE_ID)

    assert exc_info.value.message == "Card not found"


@pytest.mark.asyncio
async def test_http_error_message_is_kept_verbatim(backend, supabase) -> None:
    backend.raise_on_call = FunctionsHttpError("insufficient permissions")
    ledger = RemoteLedgerClient(supabase)

    with pytest.raises(RemoteCallError) as exc_info:
        await ledger.redeem_reward(CARD_ID, REWARD_ID)

    assert exc_info.value.message == "insufficient permissions"


@pytest.mark.asyncio
async def test_transport_failure_uses_generic_message(backend, supabase) -> None:
    backend.raise_on_call = httpx.ConnectError("connection refused")
    ledger = RemoteLedgerClient(supabase, generic_error="Something went wrong. Please try again.")

    with pytest.raises(RemoteCallError) as exc_info:
        await ledger.add_stamp(CARD_ID, STORE_ID)

    assert exc_info.value.message == "Something went wrong. Please try again."
    # No retry on a mutating call
    assert len(backend.calls) == 1


@pytest.mark.asyncio
async def test_analytics_accepts_plain_numbers_and_metric_objects(backend, supabase) -> None:
    backend.analytics = {
        "total_customers": {"value": 42, "change": 5},
        "repeat_customers": 12,
        "stamps_issued": {"value": 300},
        "prizes_redeemed": None,
        "avg_visit_frequency": 2.5,
        "top_customer": {"full_name": "Ada", "stamps": 30},
        "referral_signups": 3,
        "top_referrer": None,
        "is_live": True,
    }
    ledger = RemoteLedgerClient(supabase)

    snapshot = await ledger.fetch_analytics(STORE_ID)

    assert backend.calls == [("get-analytics", {"store_id": STORE_ID})]
    assert snapshot.total_customers.value == 42
    assert snapshot.total_customers.change == 5
    assert snapshot.repeat_customers.value == 12
    assert snapshot.repeat_customers.change is None
    assert snapshot.prizes_redeemed.value == 0
    assert snapshot.avg_visit_frequency.value == 2.5
    assert snapshot.top_customer["full_name"] == "Ada"
    assert snapshot.is_live


@pytest.mark.asyncio
async def test_customer_segments(backend, supabase) -> None:
    backend.segments = {"segments": {"new": 4, "loyal": 2, "vips": 1, "at_risk": 3}, "visit_stats": {"avg": 1.5}}
    ledger = RemoteLedgerClient(supabase)

    segments = await ledger.fetch_customer_segments(STORE_ID)

    assert backend.calls == [("get-customer-segments", {"store_id": STORE_ID})]
    assert segments.segments.at_risk == 3
    assert segments.visit_stats == {"avg": 1.5}


@pytest.mark.asyncio
async def test_empty_analytics_body_is_an_error(backend, supabase) -> None:
    async def empty(*args, **kwargs):
        return b""

    supabase.functions.invoke = empty
    ledger = RemoteLedgerClient(supabase, generic_error="generic")

    with pytest.raises(RemoteCallError) as exc_info:
        await ledger.fetch_analytics(STORE_ID)

    assert exc_info.value.message == "generic"
