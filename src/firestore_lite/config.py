"""
Client settings.

Values come from keyword overrides, ``FIRESTORE_*`` environment variables or a
``.env`` file. ``FIRESTORE_EMULATOR_HOST`` always wins over a configured host
and switches the transport to plain HTTP.
"""

from typing import Dict, Optional

from pydantic import AliasChoices, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .path import DEFAULT_DATABASE_ID

DEFAULT_HOST = "firestore.googleapis.com"


class FirestoreSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="FIRESTORE_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    project_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("project_id", "FIRESTORE_PROJECT_ID", "GOOGLE_CLOUD_PROJECT"),
    )
    database_id: str = DEFAULT_DATABASE_ID
    host: str = DEFAULT_HOST
    ssl: bool = True
    emulator_host: Optional[str] = None
    access_token: Optional[str] = None
    custom_headers: Dict[str, str] = Field(default_factory=dict)
    timeout_s: float = 60.0

    # ---- client pool ----
    max_idle_clients: int = Field(default=1, ge=0)
    max_concurrent_per_client: int = Field(default=100, ge=1)
    max_pool_size: int = Field(default=16, ge=1)

    # ---- request retry backoff ----
    initial_retry_delay_ms: int = Field(default=100, ge=0)
    retry_delay_multiplier: float = Field(default=1.3, ge=1.0)
    max_retry_delay_ms: int = Field(default=60_000, ge=0)

    @field_validator("host", "emulator_host")
    @classmethod
    def _validate_host(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        v = v.strip()
        if not v or "/" in v:
            raise ValueError(f"Invalid host: {v!r} (expected 'hostname[:port]')")
        return v

    @model_validator(mode="after")
    def _apply_emulator(self) -> "FirestoreSettings":
        if self.emulator_host:
            self.host = self.emulator_host
            self.ssl = False
            # Emulator treats "owner" as an admin token; explicit headers take precedence.
            self.custom_headers = {"Authorization": "Bearer owner", **self.custom_headers}
        return self

    @property
    def base_url(self) -> str:
        scheme = "https" if self.ssl else "http"
        return f"{scheme}://{self.host}/v1"

    @property
    def using_emulator(self) -> bool:
        return bool(self.emulator_host)


def load_settings(**overrides) -> FirestoreSettings:
    """Build a fresh settings object; each client owns its own copy."""
    return FirestoreSettings(**overrides)
