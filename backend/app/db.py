"""
Database client configuration.

Supabase provides PostgreSQL (expenses, meals, saved_foods,
processed_emails, user_email_settings) and Auth.
"""

import os
from supabase import create_client, Client
from dotenv import load_dotenv

load_dotenv()

SUPABASE_URL = os.getenv("SUPABASE_URL")
SUPABASE_KEY = os.getenv("SUPABASE_KEY")
SUPABASE_SERVICE_KEY = os.getenv("SUPABASE_SERVICE_KEY")

if not SUPABASE_URL or not SUPABASE_KEY:
    raise ValueError("SUPABASE_URL and SUPABASE_KEY must be set in environment variables")

# Anon-key client: used for Auth token verification
supabase: Client = create_client(SUPABASE_URL, SUPABASE_KEY)

# Service-role client for sync and analytics queries (bypasses RLS; every
# query filters on user_id explicitly)
supabase_admin: Client = create_client(SUPABASE_URL, SUPABASE_SERVICE_KEY) if SUPABASE_SERVICE_KEY else None
