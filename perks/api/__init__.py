from fastapi import APIRouter

from .routes import (
    customer,
    dashboard,
    health,
    session,
)

api_router = APIRouter()

# Health check
api_router.include_router(health.router, tags=["health"])

# Role resolution after login
api_router.include_router(session.router, prefix="/session", tags=["session"])

# Store dashboard: live customers, stamps, analytics
api_router.include_router(dashboard.router, prefix="/dashboard", tags=["dashboard"])

# Customer-facing card view
api_router.include_router(customer.router, prefix="/customer", tags=["customer"])
