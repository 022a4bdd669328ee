import os

from supabase import create_client


_client = None


def get_supabase():
    global _client
    if _client is None:
        url = os.environ.get("SUPABASE_URL")
        key = os.environ.get("SUPABASE_SERVICE_ROLE_KEY") or os.environ.get("SUPABASE_KEY")
        _client = create_client(url, key)
    return _client
