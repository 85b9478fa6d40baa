from fastapi import Request

from perks.services.sessions import SessionRegistry


def get_registry(request: Request) -> SessionRegistry:
    """Get the application's session registry (created in the lifespan)."""
    return request.app.state.sessions
