"""Environment-driven settings."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

MINTS_ENV_VAR = "CASHU_MINTS"
RELAYS_ENV_VAR = "NOSTR_RELAYS"
HOME_ENV_VAR = "NUTJAR_HOME"


def _split_urls(value: str | None) -> list[str]:
    """Split a comma-separated list, dropping blanks and duplicates in order."""
    if not value:
        return []
    urls = [url.strip().rstrip("/") for url in value.split(",")]
    return list(dict.fromkeys(url for url in urls if url))


def get_mints_from_env() -> list[str]:
    """Get mint URLs from CASHU_MINTS.

    Expected format: comma-separated URLs
    Example: CASHU_MINTS="https://mint1.com,https://mint2.com"
    """
    return _split_urls(os.getenv(MINTS_ENV_VAR))


def get_relays_from_env() -> list[str]:
    return _split_urls(os.getenv(RELAYS_ENV_VAR))


@dataclass
class Settings:
    """Runtime settings. Explicit constructor arguments win over the environment."""

    data_dir: Path = field(default_factory=lambda: Path.home() / ".nutjar")
    mint_urls: list[str] = field(default_factory=list)
    relay_urls: list[str] = field(default_factory=list)
    mint_timeout: float = 10.0
    mint_retries: int = 3
    mint_debug: bool = False

    @classmethod
    def from_env(cls) -> Settings:
        home = os.getenv(HOME_ENV_VAR)
        return cls(
            data_dir=Path(home).expanduser() if home else Path.home() / ".nutjar",
            mint_urls=get_mints_from_env(),
            relay_urls=get_relays_from_env(),
            mint_timeout=float(os.getenv("MINT_TIMEOUT", "10")),
            mint_retries=int(os.getenv("MINT_RETRIES", "3")),
            mint_debug=os.getenv("MINT_DEBUG", "false").lower() == "true",
        )
