from supabase import AsyncClient

from database.connection import with_retry


class RewardRepository:

    @staticmethod
    @with_retry()
    async def list_active(db: AsyncClient, store_id: str) -> list[dict]:
        """Get the active rewards of a store, cheapest first."""
        result = await db.table("rewards").select("*").eq(
            "store_id", store_id
        ).eq("is_active", True).order("stamps_required").execute()
        return result.data if result and result.data else []
