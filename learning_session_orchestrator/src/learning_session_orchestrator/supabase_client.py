"""
Supabase client for the learning session
"""
import os
from typing import Optional

from supabase import create_client, Client
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

_supabase_client: Optional[Client] = None


def get_supabase_client() -> Client:
    """Get or create Supabase client singleton"""
    global _supabase_client

    if _supabase_client is None:
        url = os.getenv("SUPABASE_URL")
        # Client-side session: anon key, row-level security applies
        key = os.getenv("SUPABASE_ANON_KEY")

        if not url or not key:
            raise ValueError("SUPABASE_URL and SUPABASE_ANON_KEY must be set in environment")

        _supabase_client = create_client(url, key)

    return _supabase_client
