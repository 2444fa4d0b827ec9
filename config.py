"""
Runtime configuration, read once from the environment (and .env if present)
"""

import os

from dotenv import load_dotenv

#============================================================
load_dotenv()

DATABASE_URL        = os.getenv("DATABASE_URL")

TMDB_API_KEY        = os.getenv("TMDB_API_KEY", "")
TMDB_BASE_URL       = os.getenv("TMDB_BASE_URL", "https://api.themoviedb.org/3")
TMDB_IMAGE_BASE     = os.getenv("TMDB_IMAGE_BASE", "https://image.tmdb.org/t/p")
TMDB_LANGUAGE       = os.getenv("TMDB_LANGUAGE", "zh-CN")
TMDB_TIMEOUT        = float(os.getenv("TMDB_TIMEOUT", "10.0"))

ADMIN_USERNAME      = os.getenv("ADMIN_USERNAME", "")
ADMIN_PASSWORD      = os.getenv("ADMIN_PASSWORD", "")
ADMIN_PASSWORD_HASH = os.getenv("ADMIN_PASSWORD_HASH", "")

CRON_SECRET         = os.getenv("CRON_SECRET", "")

ALLOW_ALL_ORIGINS   = os.getenv("ALLOW_ALL_ORIGINS", "true").lower() == "true"
LOG_LEVEL           = os.getenv("LOG_LEVEL", "INFO").upper()

HOST                = os.getenv("HOST", "0.0.0.0")
PORT                = int(os.getenv("PORT", "8000"))


def require_database_url() -> str:
    if not DATABASE_URL:
        raise ValueError("DATABASE_URL environment variable is not set")
    return DATABASE_URL
