import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator, Optional

from fastapi import Depends, HTTPException, status
from supabase import AsyncClient

from perks.core.config import settings
from perks.core.errors import AccountNotFoundError
from perks.core.security import AuthSession, require_auth
from perks.repositories.loyalty_card import LoyaltyCardRepository
from perks.repositories.store import StoreRepository
from database.connection import request_db

logger = logging.getLogger(__name__)

ACCOUNT_NOT_FOUND = "Could not find an active account. Please contact support."


async def get_user_db(session: AuthSession = Depends(require_auth)) -> AsyncIterator[AsyncClient]:
    """Get a Supabase client acting as the signed-in user, closed after the request."""
    async with request_db(session.access_token) as db:
        yield db


class Role(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    STORE_OWNER = "store_owner"
    CUSTOMER = "customer"


@dataclass
class ResolvedRole:
    role: Role
    redirect_to: str
    store_id: Optional[str] = None
    loyalty_card_id: Optional[str] = None


class RoleResolver:
    """Decide where a signed-in user belongs: their store or their card.

    The store lookup wins over the card lookup. Rows for a fresh signup are
    created by a database trigger and may not be visible yet, so the lookup
    is retried a few times before giving up.
    """

    def __init__(
        self,
        db: AsyncClient,
        attempts: Optional[int] = None,
        delay_ms: Optional[int] = None,
    ):
        self._db = db
        self.attempts = attempts if attempts is not None else settings.role_resolution_attempts
        self.delay = (delay_ms if delay_ms is not None else settings.role_resolution_delay_ms) / 1000

    async def resolve(self, session: Optional[AuthSession]) -> ResolvedRole:
        if session is None:
            return ResolvedRole(role=Role.UNAUTHENTICATED, redirect_to="/login")

        for attempt in range(1, self.attempts + 1):
            # First check also waits: the signup trigger needs a moment
            await asyncio.sleep(self.delay)

            store_id = await StoreRepository.get_id_by_owner(self._db, session.user_id)
            if store_id:
                return ResolvedRole(
                    role=Role.STORE_OWNER,
                    redirect_to="/store/dashboard",
                    store_id=store_id,
                )

            card = await LoyaltyCardRepository.get_latest_for_user(self._db, session.user_id)
            if card:
                return ResolvedRole(
                    role=Role.CUSTOMER,
                    redirect_to=f"/customer/card/{card['id']}",
                    loyalty_card_id=card["id"],
                )

            logger.info(f"No store or card yet for user {session.user_id} (attempt {attempt}/{self.attempts})")

        logger.warning(f"Role resolution gave up for user {session.user_id}")
        raise AccountNotFoundError(ACCOUNT_NOT_FOUND)


class StoreAccessContext:
    """Context object containing the session, its database client and store_id."""

    def __init__(self, session: AuthSession, db: AsyncClient, store_id: str):
        self.session = session
        self.db = db
        self.store_id = store_id
        self.user_id = session.user_id


async def require_store_owner(
    store_id: str,
    session: AuthSession = Depends(require_auth),
    db: AsyncClient = Depends(get_user_db),
) -> StoreAccessContext:
    """Verify the signed-in user owns `store_id`."""
    owned = await StoreRepository.get_id_by_owner(db, session.user_id)
    if owned != store_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="You don't have access to this store",
        )
    return StoreAccessContext(session=session, db=db, store_id=store_id)
