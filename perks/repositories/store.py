from supabase import AsyncClient

from database.connection import with_retry

STORE_SELECT = "*, locations(*, store_hours(*)), rewards(*)"


class StoreRepository:

    @staticmethod
    @with_retry()
    async def get_by_id(db: AsyncClient, store_id: str) -> dict | None:
        """Get a store by ID, with its locations, hours and rewards."""
        result = await db.table("stores").select(STORE_SELECT).eq(
            "id", store_id
        ).limit(1).execute()
        return result.data[0] if result and result.data else None

    @staticmethod
    @with_retry()
    async def get_id_by_owner(db: AsyncClient, owner_id: str) -> str | None:
        """Get only the store ID for an owner (role checks)."""
        result = await db.table("stores").select("id").eq(
            "owner_id", owner_id
        ).limit(1).execute()
        return result.data[0]["id"] if result and result.data else None
