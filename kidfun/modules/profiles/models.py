# Supabase table: profiles
# This file documents the expected database schema
# Actual operations are handled via Supabase SDK in service.py

"""
Expected Supabase table structure:

profiles:
- id: uuid (primary key)
- user_id: uuid (unique, references auth.users.id, not null)
- first_name: text (nullable)
- last_name: text (nullable)
- email: text (nullable) - synced from auth.users
- created_at: timestamptz (default: now())
- updated_at: timestamptz (nullable)

Rows are created by a database trigger on auth.users insert; this service
only reads them and lets a user edit their own names.
"""

PROFILES_TABLE = "profiles"
