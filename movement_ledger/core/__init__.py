from datetime import datetime, timezone

from .config import settings
from .database import engine, SessionLocal, get_db, Base

# Captured once at import; read-only afterwards
START_TIME = datetime.now(timezone.utc)

__all__ = ["settings", "engine", "SessionLocal", "get_db", "Base", "START_TIME"]
