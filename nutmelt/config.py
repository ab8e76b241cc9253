"""Environment configuration.

Values are read from the process environment first and then from a ``.env``
file in the current working directory:

    CASHU_MINT_TIMEOUT=30
    MINT_DEBUG=true
    NUTMELT_INVOICE_MEMO="cashu melt"
    NUTMELT_MAX_ROUNDS=2
    NUTMELT_LIGHTNING_ADDRESS="user@getalby.com"
"""

from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv

TIMEOUT_ENV_VAR = "CASHU_MINT_TIMEOUT"
DEBUG_ENV_VAR = "MINT_DEBUG"
MEMO_ENV_VAR = "NUTMELT_INVOICE_MEMO"
MAX_ROUNDS_ENV_VAR = "NUTMELT_MAX_ROUNDS"
ADDRESS_ENV_VAR = "NUTMELT_LIGHTNING_ADDRESS"

DEFAULT_TIMEOUT = 30.0
DEFAULT_MEMO = "cashu melt"
DEFAULT_MAX_ROUNDS = 2

_loaded = False


def load_env() -> None:
    """Load ``cwd/.env`` once; real environment variables take precedence."""
    global _loaded
    if _loaded:
        return
    env_file = Path.cwd() / ".env"
    if env_file.exists():
        load_dotenv(env_file, override=False)
    _loaded = True


def _get(name: str) -> str | None:
    load_env()
    value = os.getenv(name)
    if value is None:
        return None
    value = value.strip()
    return value or None


def get_mint_timeout() -> float:
    value = _get(TIMEOUT_ENV_VAR)
    if value is None:
        return DEFAULT_TIMEOUT
    try:
        timeout = float(value)
    except ValueError:
        raise ValueError(f"{TIMEOUT_ENV_VAR} must be a number, got {value!r}")
    if timeout <= 0:
        raise ValueError(f"{TIMEOUT_ENV_VAR} must be positive, got {value!r}")
    return timeout


def is_mint_debug() -> bool:
    return (_get(DEBUG_ENV_VAR) or "false").lower() == "true"


def get_invoice_memo() -> str:
    return _get(MEMO_ENV_VAR) or DEFAULT_MEMO


def get_max_rounds() -> int:
    value = _get(MAX_ROUNDS_ENV_VAR)
    if value is None:
        return DEFAULT_MAX_ROUNDS
    try:
        rounds = int(value)
    except ValueError:
        raise ValueError(f"{MAX_ROUNDS_ENV_VAR} must be an integer, got {value!r}")
    if rounds < 2:
        raise ValueError(f"{MAX_ROUNDS_ENV_VAR} must be at least 2, got {rounds}")
    return rounds


def get_lightning_address() -> str | None:
    return _get(ADDRESS_ENV_VAR)
