"""Runtime settings read from the environment (and .env, if present)."""

import os
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, Field

from mlp.entities.registry import DEFAULT_SCHEMA_PATH


class Settings(BaseModel):
    db_path: str = "mlp.db"
    schema_path: Path = DEFAULT_SCHEMA_PATH
    pool_size: int = Field(default=4, ge=1)
    log_level: str = "INFO"
    cors_origins: list[str] = Field(default_factory=lambda: ["http://localhost:5173"])

    @classmethod
    def from_env(cls, env_file: str | Path | None = None) -> "Settings":
        """Build settings from MLP_* variables. Existing env vars win over .env."""
        load_dotenv(env_file or Path(__file__).resolve().parent.parent / ".env")
        values: dict[str, object] = {}
        if db_path := os.environ.get("MLP_DB_PATH"):
            values["db_path"] = db_path
        if schema_path := os.environ.get("MLP_SCHEMA_PATH"):
            values["schema_path"] = schema_path
        if pool_size := os.environ.get("MLP_POOL_SIZE"):
            values["pool_size"] = pool_size
        if log_level := os.environ.get("MLP_LOG_LEVEL"):
            values["log_level"] = log_level.upper()
        if origins := os.environ.get("MLP_CORS_ORIGINS"):
            values["cors_origins"] = [o.strip() for o in origins.split(",") if o.strip()]
        return cls(**values)
