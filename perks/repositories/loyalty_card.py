from supabase import AsyncClient

from database.connection import with_retry
from perks.domain.schemas import LoyaltyCard

CARD_SELECT = (
    "id, created_at, stamps, max_stamps, customer_id, location_id, "
    "customer:customers!inner(id, full_name, user_id, referral_code), "
    "location:locations!inner(id, store_id, name, card_bg_color, card_text_color, "
    "card_stamp_color, logo_url, store:stores!inner(id, store_name, referral_enabled))"
)


def to_card(row: dict) -> LoyaltyCard:
    """Build a LoyaltyCard from a joined loyalty_cards row."""
    location = dict(row.get("location") or {})
    store = location.pop("store", None)
    return LoyaltyCard(
        id=row["id"],
        customer_id=row.get("customer_id") or (row.get("customer") or {}).get("id"),
        location_id=row.get("location_id") or location.get("id"),
        stamps=row.get("stamps") or 0,
        max_stamps=row.get("max_stamps") or 10,
        customer=row.get("customer"),
        location=location or None,
        store=store,
    )


class LoyaltyCardRepository:

    @staticmethod
    @with_retry()
    async def get_by_id(db: AsyncClient, card_id: str) -> dict | None:
        """Get a loyalty card with its customer, location and store."""
        result = await db.table("loyalty_cards").select(CARD_SELECT).eq(
            "id", card_id
        ).limit(1).execute()
        return result.data[0] if result and result.data else None

    @staticmethod
    @with_retry()
    async def get_latest_for_user(db: AsyncClient, user_id: str) -> dict | None:
        """Get the most recently created card belonging to an auth user."""
        result = await db.table("loyalty_cards").select(
            "id, customer:customers!inner(user_id)"
        ).eq("customer.user_id", user_id).order(
            "created_at", desc=True
        ).limit(1).execute()
        return result.data[0] if result and result.data else None

    @staticmethod
    @with_retry()
    async def get_by_customer(db: AsyncClient, customer_id: str) -> dict | None:
        """Get a customer's card (single-card model)."""
        result = await db.table("loyalty_cards").select("id").eq(
            "customer_id", customer_id
        ).limit(1).execute()
        return result.data[0] if result and result.data else None

    @staticmethod
    @with_retry()
    async def list_for_location(db: AsyncClient, location_id: str) -> list[dict]:
        """Get all cards signed up at a location, ordered by customer name."""
        result = await db.table("loyalty_cards").select(
            "id, stamps, max_stamps, customers:customers!inner(id, full_name)"
        ).eq("location_id", location_id).order(
            "full_name", foreign_table="customers"
        ).execute()
        return result.data if result and result.data else []
