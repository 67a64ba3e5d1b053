"""Environment-driven settings.

Values come from the process environment (optionally seeded from a .env file
via python-dotenv). ``get_settings()`` is cached; call
``get_settings.cache_clear()`` after changing the environment in tests.
"""

import os
from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, Field

from scireason.contracts.schemas import BusyScope, ReasoningConfig

load_dotenv()

DEFAULT_SECRET = "scireason-secret-key-change-in-production"


def _split_csv(raw: str) -> list[str]:
    return [item.strip() for item in raw.split(",") if item.strip()]


class Settings(BaseModel):
    """Application settings."""

    llm_provider: str = Field(default="cerebras")
    data_dir: Path = Field(default=Path("./data"))
    db_path: Path = Field(default=Path("./data/scireason.db"))
    session_secret: str = Field(default=DEFAULT_SECRET)
    jwt_expiry_days: int = Field(default=30, ge=1)
    api_url: str | None = Field(default=None, description="Base URL of a remote SciReason API")
    busy_scope: BusyScope = Field(default=BusyScope.SESSION)
    log_level: str = Field(default="INFO")
    cors_allow_origins: list[str] = Field(default_factory=list)

    @classmethod
    def from_env(cls) -> "Settings":
        data_dir = Path(os.getenv("SCIREASON_DATA_DIR", "./data"))
        return cls(
            llm_provider=os.getenv("LLM_PROVIDER", "cerebras").lower(),
            data_dir=data_dir,
            db_path=Path(os.getenv("SCIREASON_DB_PATH", str(data_dir / "scireason.db"))),
            session_secret=os.getenv("SESSION_SECRET", DEFAULT_SECRET),
            jwt_expiry_days=int(os.getenv("JWT_EXPIRY_DAYS", "30")),
            api_url=os.getenv("SCIREASON_API_URL") or None,
            busy_scope=BusyScope(os.getenv("SCIREASON_BUSY_SCOPE", "session").lower()),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            cors_allow_origins=_split_csv(os.getenv("CORS_ALLOW_ORIGINS", "")),
        )

    def reasoning_config(self) -> ReasoningConfig:
        return ReasoningConfig(busy_scope=self.busy_scope)


@lru_cache
def get_settings() -> Settings:
    return Settings.from_env()
