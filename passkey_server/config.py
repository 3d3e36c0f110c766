"""Pydantic based configuration for the passkey server."""

from __future__ import annotations

from pathlib import Path
from typing import List, Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DATA_DIR = Path(__file__).resolve().parent / "data"
DATA_DIR.mkdir(parents=True, exist_ok=True)
DEFAULT_DB_PATH = DATA_DIR / "passkeys.db"


class PasskeySettings(BaseSettings):
    """Runtime settings for the relying party."""

    model_config = SettingsConfigDict(env_prefix="PASSKEY_")

    database_url: str = Field(
        default=f"sqlite:///{DEFAULT_DB_PATH}",
        description="SQLAlchemy connection string for accounts and credentials",
    )
    rp_id: str = Field(default="localhost", description="Relying Party identifier")
    rp_name: str = Field(default="Passkey Server", description="Human readable RP name")
    origin: str = Field(
        default="http://localhost:5173",
        description="Expected origin for clientDataJSON validation",
    )
    hosted_algorithms: List[int] = Field(
        default_factory=lambda: [-7, -8, -257],
        description="COSE algorithm identifiers the RP will accept",
    )
    timeout_ms: int = Field(default=90_000, gt=0, description="Client ceremony timeout")

    session_ttl_seconds: int = Field(
        default=300, gt=0, description="Lifetime of a ceremony session"
    )
    session_backend: Literal["memory", "redis"] = "memory"
    redis_url: str = Field(default="redis://localhost:6379/0")
    redis_timeout_seconds: float = Field(
        default=2.0, gt=0, description="Socket timeout bounding every Redis call"
    )

    resident_key: Literal["required", "preferred", "discouraged"] = "required"
    user_verification: Literal["required", "preferred", "discouraged"] = "preferred"

    cookie_secure: bool = False
    cors_origins: List[str] = Field(default_factory=lambda: ["http://localhost:5173"])
