"""Roles Modifier — Application configuration via environment variables."""

from __future__ import annotations

from pydantic_settings import BaseSettings


class RolesSettings(BaseSettings):
    """Central configuration loaded from environment / .env file."""

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "env_prefix": "ROLES_",
        "extra": "ignore",
    }

    # ── Condition trees ────────────────────────────────────────
    max_condition_nodes: int = 256
    max_condition_depth: int = 16

    # ── Batched calls ──────────────────────────────────────────
    multisend_addresses: list[str] = []
    multisend_selector: str = "0x8d80ff0a"

    # ── Logging ────────────────────────────────────────────────
    log_level: str = "INFO"
    log_format: str = "json"


settings = RolesSettings()
