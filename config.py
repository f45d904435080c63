"""Configuration for the duel admin hub."""
from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

# Database (players, player_stats, duels; local identity tables)
DATABASE_URL = os.getenv(
    "DATABASE_URL",
    f"sqlite+aiosqlite:///{Path(__file__).parent / 'hub.db'}",
)

# Hosted platform (auth REST API)
SUPABASE_URL = os.getenv("SUPABASE_URL", "").rstrip("/")
SUPABASE_ANON_KEY = os.getenv("SUPABASE_ANON_KEY", "")
SUPABASE_SERVICE_ROLE_KEY = os.getenv("SUPABASE_SERVICE_ROLE_KEY", "")

# Identity backend: "supabase" (hosted auth) or "local" (self-hosted, same database)
IDENTITY_BACKEND = os.getenv("IDENTITY_BACKEND", "supabase" if SUPABASE_URL else "local").lower()

# Local identity provider (JWT sessions, initial admin bootstrap)
JWT_SECRET = os.getenv("JWT_SECRET", "change-me-in-production-use-long-random-string")
JWT_ALGORITHM = "HS256"
JWT_EXPIRE_HOURS = int(os.getenv("JWT_EXPIRE_HOURS", "12"))
INITIAL_ADMIN_EMAIL = os.getenv("INITIAL_ADMIN_EMAIL", "").strip().lower()
INITIAL_ADMIN_PASSWORD = os.getenv("INITIAL_ADMIN_PASSWORD", "")  # Set to bootstrap first admin

# TOTP second factor
MFA_ISSUER = os.getenv("MFA_ISSUER", "Admin Hub")
MFA_FRIENDLY_NAME = os.getenv("MFA_FRIENDLY_NAME", "Phone")
MFA_CHALLENGE_TTL = int(os.getenv("MFA_CHALLENGE_TTL", "300"))  # seconds

# Synthetic ("bot") accounts carry a device_id with this prefix
BOT_DEVICE_PREFIX = os.getenv("BOT_DEVICE_PREFIX", "fake_")

# Push notifications
ONESIGNAL_APP_ID = os.getenv("ONESIGNAL_APP_ID", "")
ONESIGNAL_REST_API_KEY = os.getenv("ONESIGNAL_REST_API_KEY", "")
FIREBASE_SERVICE_ACCOUNT = os.getenv("FIREBASE_SERVICE_ACCOUNT", "")  # JSON string
# "fcm", "onesignal" or empty to skip notifying players about new challenges
DUEL_NOTIFICATION_PROVIDER = os.getenv("DUEL_NOTIFICATION_PROVIDER", "").lower()

# HTTP server
API_HOST = os.getenv("API_HOST", "0.0.0.0")
API_PORT = int(os.getenv("API_PORT", "3000"))
API_RELOAD = os.getenv("API_RELOAD", "").lower() in ("1", "true", "yes")
