import os
from functools import lru_cache
from pathlib import Path
from typing import Optional


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        session_secret: str,
        session_max_age_hours: int,
        auth_secret: Optional[str],
        gemini_api_key: Optional[str],
        gemini_model: str,
        ai_timeout_secs: float,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.session_secret = session_secret
        self.session_max_age_hours = session_max_age_hours
        self.auth_secret = auth_secret
        self.gemini_api_key = gemini_api_key
        self.gemini_model = gemini_model
        self.ai_timeout_secs = ai_timeout_secs


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("FINTRACK_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "fintrack.db"
    database_url = os.getenv("FINTRACK_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("FINTRACK_TIMEZONE", "Asia/Bangkok")
    session_secret = os.getenv(
        "FINTRACK_SESSION_SECRET",
        "3f9c1e0b7d52a8e64c2f91d0b6a7e3c58d4f2a1b9e0c7d6f5a4b3c2d1e0f9a8b",
    )
    session_max_age_hours = int(os.getenv("FINTRACK_SESSION_MAX_AGE_HOURS", "24"))
    # shared with the identity provider; sign-in is refused while unset
    auth_secret = os.getenv("FINTRACK_AUTH_SECRET") or None
    gemini_api_key = os.getenv("FINTRACK_GEMINI_API_KEY") or None
    gemini_model = os.getenv("FINTRACK_GEMINI_MODEL", "gemini-2.5-flash")
    ai_timeout_secs = float(os.getenv("FINTRACK_AI_TIMEOUT_SECS", "60"))
    return Settings(
        database_url=database_url,
        timezone=timezone,
        session_secret=session_secret,
        session_max_age_hours=session_max_age_hours,
        auth_secret=auth_secret,
        gemini_api_key=gemini_api_key,
        gemini_model=gemini_model,
        ai_timeout_secs=ai_timeout_secs,
    )
