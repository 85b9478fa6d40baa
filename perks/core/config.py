import os
from functools import lru_cache

from pydantic_settings import BaseSettings


def _load_doppler_secrets():
    """Load secrets from Doppler API into environment variables.

    Must run BEFORE Settings is instantiated so pydantic can read the env vars.
    """
    token = os.getenv("DOPPLER_TOKEN")
    if not token:
        return

    try:
        import requests
        response = requests.get(
            "https://api.doppler.com/v3/configs/config/secrets/download",
            params={"format": "json"},
            auth=(token, ""),
            timeout=30,
        )
        response.raise_for_status()
        secrets = response.json()

        for key, value in secrets.items():
            if key not in os.environ:  # Don't override existing env vars
                os.environ[key] = value

        print(f"Loaded {len(secrets)} secrets from Doppler")
    except Exception as e:
        print(f"Warning: Failed to load Doppler secrets: {e}")


# Load Doppler secrets into environment BEFORE Settings is instantiated
_load_doppler_secrets()


class Settings(BaseSettings):
    # Supabase
    supabase_url: str = ""
    supabase_publishable_key: str = ""
    supabase_secret_key: str = ""
    supabase_jwt_secret: str = ""  # JWT secret for HS256 token verification
    supabase_http_timeout_seconds: float = 30.0

    # Edge function names
    add_stamp_function: str = "add-stamp-manually"
    redeem_reward_function: str = "redeem-reward"
    analytics_function: str = "get-analytics"
    segments_function: str = "get-customer-segments"

    # Stamp workflow
    undo_window_ms: int = 3000
    generic_error_message: str = "Something went wrong. Please try again."

    # Live customers auto-refresh (only while the location is open)
    live_refresh_interval_seconds: float = 10.0

    # Role resolution (new accounts may lag behind auth signup)
    role_resolution_attempts: int = 5
    role_resolution_delay_ms: int = 500

    # Realtime
    realtime_reconnect_base_delay: float = 1.0
    realtime_reconnect_max_delay: float = 30.0
    realtime_reconnect_max_attempts: int = 5
    broadcast_stamp_updates: bool = True

    # Server
    web_app_url: str = "http://localhost:3000"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
