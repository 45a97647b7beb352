from functools import lru_cache

from supabase import create_client, Client

from .config import Settings, get_settings


def create_supabase(settings: Settings) -> Client:
    """Create a Supabase client using the service role key."""
    if not settings.supabase_url or not settings.supabase_service_role_key:
        raise RuntimeError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set in environment variables")

    return create_client(settings.supabase_url, settings.supabase_service_role_key)


@lru_cache(maxsize=1)
def get_supabase() -> Client:
    """Get the shared Supabase client instance."""
    return create_supabase(get_settings())
