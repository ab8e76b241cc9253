"""Cashu token codec.

Only the JSON ``cashuA`` (V3) serialization is accepted. Legacy V2 payloads
wrapped in ``cashuA`` are read for compatibility; the bare-array V1 payload
and the CBOR ``cashuB`` serialization are refused outright.
"""

from __future__ import annotations

import base64
import binascii
import json
from typing import Any, Callable

from .types import (
    InvalidToken,
    Proof,
    TokenBundle,
    TokenGroup,
    UnsupportedTokenVersion,
)

URI_PREFIXES = ("web+cashu://", "cashu://", "cashu:")
TOKEN_PREFIX = "cashu"
V3_MARKER = "cashuA"


def strip_prefix(raw: str) -> str:
    """Remove a URI scheme prefix and surrounding whitespace."""
    token = raw.strip()
    for prefix in URI_PREFIXES:
        if token.startswith(prefix):
            return token[len(prefix) :]
    return token


def validate(raw: str) -> str:
    """Check the version marker and return the base64 payload."""
    token = strip_prefix(raw)
    if token.startswith(V3_MARKER):
        payload = token[len(V3_MARKER) :]
        if not payload:
            raise InvalidToken("Token has no payload")
        return payload
    if token.startswith(TOKEN_PREFIX) and len(token) > len(TOKEN_PREFIX):
        raise UnsupportedTokenVersion(
            f"Unsupported token version: {token[: len(V3_MARKER)]}"
        )
    raise InvalidToken("Invalid cashu token")


def _b64decode(payload: str) -> bytes:
    # Tokens in the wild use both alphabets, usually without padding
    normalized = payload.rstrip("=").replace("-", "+").replace("_", "/")
    padded = normalized + "=" * ((-len(normalized)) % 4)
    try:
        return base64.b64decode(padded, validate=True)
    except (binascii.Error, ValueError) as e:
        raise InvalidToken(f"Token payload is not valid base64: {e}") from e


def _parse_proofs(raw_proofs: Any) -> list[Proof]:
    if not isinstance(raw_proofs, list) or not raw_proofs:
        raise InvalidToken("Token group has no proofs")

    proofs: list[Proof] = []
    for raw in raw_proofs:
        if not isinstance(raw, dict):
            raise InvalidToken("Proof must be an object")
        for key in ("id", "secret", "C"):
            if not isinstance(raw.get(key), str):
                raise InvalidToken(f"Proof is missing '{key}'")
        amount = raw.get("amount")
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise InvalidToken(f"Proof has invalid amount: {amount!r}")

        proof = Proof(id=raw["id"], amount=amount, secret=raw["secret"], C=raw["C"])
        if "witness" in raw:
            proof["witness"] = raw["witness"]
        if "dleq" in raw:
            proof["dleq"] = raw["dleq"]
        proofs.append(proof)
    return proofs


def _parse_group(mint: Any, raw_proofs: Any) -> TokenGroup:
    if not isinstance(mint, str) or not mint:
        raise InvalidToken("Token group has no mint URL")
    return TokenGroup(mint, _parse_proofs(raw_proofs))


def _parse_v3(data: Any) -> TokenBundle | None:
    """Canonical ``{"token": [{"mint", "proofs"}], "unit"?, "memo"?}``."""
    if not isinstance(data, dict) or not isinstance(data.get("token"), list):
        return None
    entries = data["token"]
    if not entries:
        raise InvalidToken("Token contains no mints")

    groups = []
    for entry in entries:
        if not isinstance(entry, dict):
            raise InvalidToken("Token entry must be an object")
        groups.append(_parse_group(entry.get("mint"), entry.get("proofs")))
    return TokenBundle(groups=groups, unit=data.get("unit"), memo=data.get("memo"))


def _parse_v2(data: Any) -> TokenBundle | None:
    """Legacy ``{"proofs": [...], "mints": [{"url", "ids"}]}``."""
    if not isinstance(data, dict) or "proofs" not in data:
        return None
    mints = data.get("mints")
    if not isinstance(mints, list) or not mints or not isinstance(mints[0], dict):
        raise InvalidToken("Legacy token does not name its mint")
    return TokenBundle(groups=[_parse_group(mints[0].get("url"), data["proofs"])])


_PARSERS: tuple[Callable[[Any], TokenBundle | None], ...] = (_parse_v3, _parse_v2)


def decode(raw: str) -> TokenBundle:
    """Decode token text into a bundle grouped by mint.

    Raises:
        UnsupportedTokenVersion: for ``cashuB`` tokens and V1 proof arrays
        InvalidToken: for anything else that cannot be parsed
    """
    payload = validate(raw)
    try:
        data = json.loads(_b64decode(payload).decode())
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise InvalidToken(f"Token payload is not valid JSON: {e}") from e

    if isinstance(data, list):
        # V1 tokens carry no mint, so there is nowhere to melt them
        raise UnsupportedTokenVersion("V1 cashu tokens are not supported")

    for parser in _PARSERS:
        bundle = parser(data)
        if bundle is not None:
            return bundle
    raise InvalidToken("No valid ecash proofs found")


def encode(bundle: TokenBundle) -> str:
    """Serialize a bundle as a canonical ``cashuA`` token."""
    token_data: dict[str, Any] = {
        "token": [
            {"mint": group.mint, "proofs": [dict(p) for p in group.proofs]}
            for group in bundle.groups
        ]
    }
    if bundle.unit is not None:
        token_data["unit"] = bundle.unit
    if bundle.memo is not None:
        token_data["memo"] = bundle.memo
    json_str = json.dumps(token_data, separators=(",", ":"))
    encoded = base64.urlsafe_b64encode(json_str.encode()).decode().rstrip("=")
    return f"{V3_MARKER}{encoded}"
