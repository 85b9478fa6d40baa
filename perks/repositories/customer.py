from supabase import AsyncClient

from database.connection import with_retry


class CustomerRepository:

    @staticmethod
    @with_retry()
    async def list_for_store(db: AsyncClient, store_id: str) -> list[dict]:
        """Get every customer registered at a store (via get_store_customers RPC)."""
        result = await db.rpc("get_store_customers", {"p_store_id": store_id}).execute()
        return result.data if result and result.data else []

    @staticmethod
    async def find_by_email(db: AsyncClient, store_id: str, email: str) -> dict | None:
        """Find a store customer by email, case-insensitively."""
        wanted = email.strip().lower()
        customers = await CustomerRepository.list_for_store(db, store_id)
        for customer in customers:
            if (customer.get("email") or "").lower() == wanted:
                return customer
        return None
