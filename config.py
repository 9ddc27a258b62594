# config.py
"""
Spot Keeper — Config
Centralized environment + constants, powered by pydantic-settings (Pydantic v2).
"""

from __future__ import annotations
import shlex
from typing import Optional, List
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import field_validator

REQUIRED = ("SPOT_PROGRAM_ID", "SPOT_GAME_ID", "KEEPER_SECRET_KEY", "VRF_SECRET_KEY")


class Settings(BaseSettings):
    # pydantic-settings config
    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="",            # read raw names (e.g., RPC_URL)
        extra="ignore",
        case_sensitive=False,
    )

    # =========================
    # HTTP
    # =========================
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    DEBUG: bool = False
    ADMIN_TOKEN: Optional[str] = None

    # =========================
    # Ledger
    # =========================
    RPC_URL: str = "https://api.devnet.solana.com"
    SPOT_PROGRAM_ID: Optional[str] = None
    SPOT_GAME_ID: Optional[str] = None

    # Base58 secret key (64b or 32b seed) or a JSON byte array — MUST be set in env
    KEEPER_SECRET_KEY: Optional[str] = None

    # =========================
    # VRF prover
    # =========================
    VRF_SECRET_KEY: Optional[str] = None
    VRF_COMMAND: str = "cargo run --bin ecvrf-cli --"
    VRF_WORKDIR: Optional[str] = "../fastcrypto"
    VRF_TIMEOUT_S: float = 120.0

    # =========================
    # Scheduling / retry
    # =========================
    SCHEDULER_ENABLED: bool = True
    TRIGGER_MAX_ATTEMPTS: int = 5
    TRIGGER_RETRY_DELAY_MS: int = 1000
    IDLE_POLL_MS: int = 1000
    RECOVERY_DELAY_MS: int = 5000

    @field_validator("TRIGGER_MAX_ATTEMPTS")
    @classmethod
    def _at_least_one(cls, v: int) -> int:
        if v < 1:
            raise ValueError("TRIGGER_MAX_ATTEMPTS must be >= 1")
        return v

    @field_validator("TRIGGER_RETRY_DELAY_MS", "IDLE_POLL_MS", "RECOVERY_DELAY_MS", "VRF_TIMEOUT_S")
    @classmethod
    def _non_negative(cls, v):
        if v < 0:
            raise ValueError("intervals must be >= 0")
        return v

    # empty strings in .env count as unset
    @field_validator("SPOT_PROGRAM_ID", "SPOT_GAME_ID", "KEEPER_SECRET_KEY", "VRF_SECRET_KEY", "ADMIN_TOKEN", "VRF_WORKDIR")
    @classmethod
    def _blank_to_none(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = v.strip()
        return v or None

    # -------------------------
    # Derived helpers
    # -------------------------
    def missing_required(self) -> List[str]:
        """Names of required settings that are not set."""
        return [name for name in REQUIRED if not getattr(self, name)]

    @property
    def vrf_command_argv(self) -> List[str]:
        return shlex.split(self.VRF_COMMAND)


# Instantiate global settings (values resolved from environment)
settings = Settings()
