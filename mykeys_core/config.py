# mykeys_core/config.py

from __future__ import annotations
from dataclasses import dataclass
from typing import Optional
import os

from .records import DEFAULT_ATTEMPTS


@dataclass
class Settings:
    """
    Runtime configuration resolved from a dict or the environment.

    Dict entries win over environment variables:
        provider      MYKEYS_STORAGE_PROVIDER   memory | sqlite
        sqlite_path   MYKEYS_DB_PATH
        master_key    MYKEYS_MASTER_KEY         vault master key
        max_retries   MYKEYS_MAX_RETRIES        conflicting-write attempts
    """
    provider: str = "sqlite"
    sqlite_path: str = "db/mykeys_state.db"
    master_key: Optional[str] = None
    max_retries: int = DEFAULT_ATTEMPTS

    @classmethod
    def from_env(cls, config: dict | None = None) -> "Settings":
        config = config or {}
        return cls(
            provider=config.get("provider") or os.getenv("MYKEYS_STORAGE_PROVIDER", "sqlite"),
            sqlite_path=config.get("sqlite_path") or os.getenv("MYKEYS_DB_PATH", "db/mykeys_state.db"),
            master_key=config.get("master_key") or os.getenv("MYKEYS_MASTER_KEY") or None,
            max_retries=int(config.get("max_retries") or os.getenv("MYKEYS_MAX_RETRIES", DEFAULT_ATTEMPTS)),
        )

    def storage_config(self) -> dict:
        return {"provider": self.provider, "sqlite_path": self.sqlite_path}
