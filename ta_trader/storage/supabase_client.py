"""
Supabase client factory. Credentials come from the environment (.env supported).
"""
import os
from typing import Optional

from dotenv import load_dotenv
from supabase import Client, create_client

load_dotenv()


def create_supabase_client(url: Optional[str] = None, key: Optional[str] = None) -> Client:
    url = url or os.environ.get("SUPABASE_URL")
    # Prefer Service Role Key for backend writes
    key = key or os.environ.get("SUPABASE_SERVICE_ROLE_KEY") or os.environ.get("SUPABASE_KEY")
    if not url or not key:
        raise RuntimeError(
            "Missing SUPABASE_URL or SUPABASE_KEY/SUPABASE_SERVICE_ROLE_KEY env vars."
        )
    return create_client(url, key)
