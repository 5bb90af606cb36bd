from __future__ import annotations

import hmac
import secrets
from typing import Final


RUN_TOKEN_ENV_VAR: Final[str] = "AGENTRELAY_RUN_TOKEN"
_TOKEN_BYTES: Final[int] = 32


def mint_run_token() -> str:
    """Return a fresh opaque per-run secret (64 hex chars)."""
    return secrets.token_hex(_TOKEN_BYTES)


def tokens_match(expected: str | None, presented: str | None) -> bool:
    if not expected or not presented:
        return False
    return hmac.compare_digest(expected.encode("utf-8"), presented.encode("utf-8"))
