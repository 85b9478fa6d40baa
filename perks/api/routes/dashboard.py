import logging

from typing import Optional

from fastapi import APIRouter, Depends, Request

from perks.api.deps import get_registry
from perks.api.sse import event_response
from perks.core.errors import PartialBatchError
from perks.core.permissions import StoreAccessContext, require_store_owner
from perks.core.security import AuthSession, require_auth
from perks.domain.schemas import (
    ActionResponse,
    AnalyticsSnapshot,
    CustomerSegments,
    DashboardCardResponse,
    LiveSessionsResponse,
    LocationCustomersResponse,
    ManualLookupRequest,
    ManualLookupResponse,
    ManualStampRequest,
    ManualStampResponse,
    UndoRequest,
)
from perks.services.actions import ActionKind, ActionTarget
from perks.services.reconciler import ActionOutcome
from perks.services.sessions import DashboardSession, SessionRegistry

logger = logging.getLogger(__name__)

router = APIRouter()


def get_dashboard(
    store_id: str,
    auth: AuthSession = Depends(require_auth),
    registry: SessionRegistry = Depends(get_registry),
) -> DashboardSession:
    """The caller's mounted dashboard for `store_id` (404 if not mounted)."""
    return registry.get_dashboard(auth.user_id, store_id)


def _action_response(outcome: ActionOutcome) -> ActionResponse:
    return ActionResponse(
        accepted=outcome.accepted,
        status=outcome.status.value,
        card=outcome.card,
        notice=outcome.notice,
    )


# ============================================
# Session Management
# ============================================

@router.post("/{store_id}/session", response_model=LiveSessionsResponse)
async def mount_dashboard(
    store_id: str,
    ctx: StoreAccessContext = Depends(require_store_owner),
    registry: SessionRegistry = Depends(get_registry),
):
    """Mount the store page: subscribe to the store channel and start the live refresh."""
    session = await registry.acquire_dashboard(ctx.session, store_id)
    return session.live_state()


@router.delete("/{store_id}/session")
async def unmount_dashboard(
    store_id: str,
    auth: AuthSession = Depends(require_auth),
    registry: SessionRegistry = Depends(get_registry),
):
    closed = await registry.release_dashboard(auth.user_id, store_id)
    return {"closed": closed}


@router.get("/{store_id}/live", response_model=LiveSessionsResponse)
def get_live_sessions(session: DashboardSession = Depends(get_dashboard)):
    """Customers currently viewing their card, and the state of every action control."""
    return session.live_state()


@router.get("/{store_id}/events")
async def stream_events(request: Request, session: DashboardSession = Depends(get_dashboard)):
    return event_response(
        session.events,
        request,
        initial_event="presence",
        initial_data=session.live_state().model_dump(),
    )


@router.get("/{store_id}/customers", response_model=LocationCustomersResponse)
async def get_customers(
    location_id: Optional[str] = None,
    session: DashboardSession = Depends(get_dashboard),
):
    """Every card signed up at the selected location, by customer name.

    Passing `location_id` switches the dashboard to that location first.
    """
    if location_id and location_id != session.location_id:
        await session.select_location(location_id)
    else:
        await session.refresh_customers()
    return session.customers_state()


# ============================================
# Stamp & Redeem
# ============================================

@router.get("/{store_id}/cards/{card_id}", response_model=DashboardCardResponse)
async def get_card(card_id: str, session: DashboardSession = Depends(get_dashboard)):
    """The card with the state of its stamp and redeem controls."""
    return await session.card_view(card_id)


@router.post("/{store_id}/cards/{card_id}/stamp", response_model=ActionResponse)
async def add_stamp(card_id: str, session: DashboardSession = Depends(get_dashboard)):
    """Add one stamp. Refused (accepted=false) while the card has an action in progress."""
    return _action_response(await session.add_stamp(card_id))


@router.post("/{store_id}/cards/{card_id}/redeem/{reward_id}", response_model=ActionResponse)
async def redeem_reward(card_id: str, reward_id: str, session: DashboardSession = Depends(get_dashboard)):
    return _action_response(await session.redeem(card_id, reward_id))


@router.post("/{store_id}/cards/{card_id}/undo", response_model=ActionResponse)
async def undo_action(
    card_id: str,
    data: UndoRequest,
    session: DashboardSession = Depends(get_dashboard),
):
    """Undo the last stamp or redemption while its undo window is open."""
    if data.kind == ActionKind.REDEEM_REWARD.value and data.reward_id:
        target = ActionTarget.redeem(card_id, data.reward_id)
    else:
        target = ActionTarget.add_stamp(card_id)
    return _action_response(await session.undo(target))


# ============================================
# Manual Stamps
# ============================================

@router.post("/{store_id}/manual-stamps/lookup", response_model=ManualLookupResponse)
async def find_customer(data: ManualLookupRequest, session: DashboardSession = Depends(get_dashboard)):
    return await session.manual.lookup(data.email)


@router.post("/{store_id}/manual-stamps", response_model=ManualStampResponse)
async def add_manual_stamps(data: ManualStampRequest, session: DashboardSession = Depends(get_dashboard)):
    """Add several stamps at once. Stamps applied before a failure are kept."""
    try:
        result = await session.manual.add_stamps(data.loyalty_card_id, data.stamps, data.full_name)
    except PartialBatchError:
        await session.refresh_card(data.loyalty_card_id)
        raise
    session.push_notice(result.notice)
    await session.refresh_card(data.loyalty_card_id)
    return result


# ============================================
# Analytics
# ============================================

@router.get("/{store_id}/analytics", response_model=AnalyticsSnapshot)
async def get_analytics(session: DashboardSession = Depends(get_dashboard)):
    return await session.analytics()


@router.get("/{store_id}/segments", response_model=CustomerSegments)
async def get_segments(session: DashboardSession = Depends(get_dashboard)):
    return await session.segments()
