from typing import AsyncIterator, Optional

from fastapi import APIRouter, Depends

from database.connection import request_db
from perks.core.permissions import RoleResolver
from perks.core.security import AuthSession, get_current_session
from perks.domain.schemas import SessionResponse

router = APIRouter()


async def get_resolver(
    session: Optional[AuthSession] = Depends(get_current_session),
) -> AsyncIterator[Optional[RoleResolver]]:
    if session is None:
        yield None
        return
    async with request_db(session.access_token) as db:
        yield RoleResolver(db)


@router.get("", response_model=SessionResponse)
async def resolve_session(
    session: Optional[AuthSession] = Depends(get_current_session),
    resolver: Optional[RoleResolver] = Depends(get_resolver),
):
    """Work out where the signed-in user should land after login.

    Anonymous callers are sent to /login. Store owners go to their dashboard
    and customers to their most recent card.
    """
    if session is None or resolver is None:
        return SessionResponse(role="unauthenticated", redirect_to="/login")

    resolved = await resolver.resolve(session)
    return SessionResponse(
        role=resolved.role.value,
        redirect_to=resolved.redirect_to,
        store_id=resolved.store_id,
        loyalty_card_id=resolved.loyalty_card_id,
        is_super_admin=session.is_super_admin,
    )
