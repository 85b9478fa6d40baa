from fastapi import APIRouter, Depends, Request

from perks.api.deps import get_registry
from perks.api.sse import event_response
from perks.core.security import AuthSession, require_auth
from perks.domain.schemas import ActionResponse, RenderedCard
from perks.services.sessions import CustomerCardSession, SessionRegistry

router = APIRouter()


def get_card_session(
    card_id: str,
    auth: AuthSession = Depends(require_auth),
    registry: SessionRegistry = Depends(get_registry),
) -> CustomerCardSession:
    return registry.get_card(auth.user_id, card_id)


@router.post("/cards/{card_id}/session", response_model=RenderedCard)
async def open_card(
    card_id: str,
    auth: AuthSession = Depends(require_auth),
    registry: SessionRegistry = Depends(get_registry),
):
    """Open the card view: follow the card row and show up as live at the store."""
    session = await registry.acquire_card(auth, card_id)
    return session.rendered()


@router.delete("/cards/{card_id}/session")
async def close_card(
    card_id: str,
    auth: AuthSession = Depends(require_auth),
    registry: SessionRegistry = Depends(get_registry),
):
    closed = await registry.release_card(auth.user_id, card_id)
    return {"closed": closed}


@router.get("/cards/{card_id}", response_model=RenderedCard)
def get_card(session: CustomerCardSession = Depends(get_card_session)):
    return session.rendered()


@router.post("/cards/{card_id}/redeem/{reward_id}", response_model=ActionResponse)
async def redeem_reward(reward_id: str, session: CustomerCardSession = Depends(get_card_session)):
    outcome = await session.redeem(reward_id)
    return ActionResponse(
        accepted=outcome.accepted,
        status=outcome.status.value,
        card=outcome.card,
        notice=outcome.notice,
    )


@router.get("/cards/{card_id}/events")
async def stream_events(request: Request, session: CustomerCardSession = Depends(get_card_session)):
    return event_response(
        session.events,
        request,
        initial_event="card",
        initial_data=session.rendered().model_dump(),
    )
