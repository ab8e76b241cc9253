"""
Cashu Mint API client for the melt endpoints (NUT-05)."""

from __future__ import annotations

import logging
from typing import Any, TypedDict, cast

import httpx

from .config import get_mint_timeout, is_mint_debug
from .types import (
    CurrencyUnit,
    MeltNotPaid,
    MeltPayload,
    MeltQuote,
    MintRejected,
    MintRejectedMelt,
    MintRejectedQuote,
    MintUnreachable,
)

logger = logging.getLogger(__name__)


# ──────────────────────────────────────────────────────────────────────────────
# Mint API client
# ──────────────────────────────────────────────────────────────────────────────


class Mint:
    def __init__(
        self,
        url: str,
        *,
        client: httpx.AsyncClient | None = None,
        timeout: float | None = None,
    ) -> None:
        # Normalize URL by removing trailing slashes
        self.url = url.rstrip("/")
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(
            timeout=timeout if timeout is not None else get_mint_timeout()
        )

    async def aclose(self) -> None:
        """Close the HTTP client if we created it."""
        if self._owns_client:
            await self.client.aclose()

    async def __aenter__(self) -> Mint:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        rejected: type[MintRejected],
        json: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Make HTTP request to mint.

        Any httpx failure before a usable response arrives raises
        ``MintUnreachable``; error responses raise ``rejected``.
        """
        if is_mint_debug():
            logger.debug("MINT_DEBUG %s request to %s%s", method, self.url, path)
        try:
            response = await self.client.request(method, f"{self.url}{path}", json=json)
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise MintUnreachable(
                f"Mint {self.url} unreachable: {e!r}", mint_url=self.url
            ) from e

        if response.status_code >= 400:
            detail = _error_detail(response)
            raise rejected(
                f"Mint returned {response.status_code}: {detail}",
                mint_url=self.url,
                status_code=response.status_code,
                detail=detail,
            )

        try:
            body = response.json()
        except ValueError as e:
            raise rejected(
                f"Mint returned invalid JSON: {response.text[:200]}",
                mint_url=self.url,
                status_code=response.status_code,
            ) from e
        if not isinstance(body, dict):
            raise rejected(
                f"Mint returned unexpected body: {body!r}",
                mint_url=self.url,
                status_code=response.status_code,
            )
        return body

    # ───────────────────────── Melting ─────────────────────────────────

    async def create_melt_quote(
        self, request: str, *, unit: CurrencyUnit = "sat"
    ) -> MeltQuote:
        """Get a quote for paying a Lightning invoice."""
        body: PostMeltQuoteRequest = {"request": request, "unit": unit}
        response = await self._request(
            "POST",
            "/v1/melt/quote/bolt11",
            rejected=MintRejectedQuote,
            json=cast(dict[str, Any], body),
        )
        return self._parse_melt_quote(response)

    async def get_melt_quote(self, quote_id: str) -> PostMeltQuoteResponse:
        """Check status of a melt quote."""
        return cast(
            PostMeltQuoteResponse,
            await self._request(
                "GET", f"/v1/melt/quote/bolt11/{quote_id}", rejected=MintRejectedQuote
            ),
        )

    async def melt(self, payload: MeltPayload) -> PostMeltResponse:
        """Melt tokens to pay the Lightning invoice behind ``payload.quote``.

        Raises:
            MeltNotPaid: if the mint answers but the payment did not go through.
                The inputs may already be spent at this point.
        """
        response = cast(
            PostMeltResponse,
            await self._request(
                "POST",
                "/v1/melt/bolt11",
                rejected=MintRejectedMelt,
                json=payload.to_json(),
            ),
        )
        if not is_paid(response):
            state = response.get("state")
            raise MeltNotPaid(
                f"Lightning payment failed. State: {state or 'unknown'}",
                mint_url=self.url,
                quote=payload.quote,
                state=state,
            )
        return response

    def _parse_melt_quote(self, response: dict[str, Any]) -> MeltQuote:
        try:
            quote = response["quote"]
            amount = int(response["amount"])
            fee_reserve = int(response.get("fee_reserve", 0))
        except (KeyError, TypeError, ValueError) as e:
            raise MintRejectedQuote(
                f"Malformed melt quote: {response!r}", mint_url=self.url
            ) from e
        if not isinstance(quote, str) or not quote:
            raise MintRejectedQuote(
                f"Melt quote has no id: {response!r}", mint_url=self.url
            )
        return MeltQuote(
            quote=quote,
            amount=amount,
            fee_reserve=fee_reserve,
            expiry=response.get("expiry"),
        )


def is_paid(response: PostMeltResponse | PostMeltQuoteResponse) -> bool:
    """NUT-05 mints report ``paid``; newer ones report ``state`` and send
    ``paid`` as null or not at all."""
    if response.get("paid") is not None:
        return bool(response["paid"])
    return response.get("state") == "PAID"


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text
    if isinstance(body, dict) and "detail" in body:
        code = body.get("code")
        return f"{body['detail']} (code {code})" if code is not None else str(body["detail"])
    return response.text


def validate_mint_url(url: str) -> bool:
    """Validate that a mint URL has the correct format.

    Args:
        url: Mint URL to validate

    Returns:
        True if URL appears valid, False otherwise
    """
    if not url:
        return False

    # Must parse as an absolute http(s) URL with a host
    try:
        parsed = httpx.URL(url)
    except httpx.InvalidURL:
        return False
    return parsed.scheme in ("http", "https") and bool(parsed.host)


# ──────────────────────────────────────────────────────────────────────────────
# Type definitions based on NUT-05
# ──────────────────────────────────────────────────────────────────────────────


class PostMeltQuoteRequest(TypedDict):
    """Request body for melt quote."""

    request: str  # bolt11 invoice
    unit: CurrencyUnit


class PostMeltQuoteResponse(TypedDict, total=False):
    """Melt quote response."""

    quote: str
    amount: int
    fee_reserve: int
    paid: bool
    state: str  # "UNPAID", "PENDING", "PAID"
    expiry: int
    request: str
    unit: CurrencyUnit


class PostMeltResponse(TypedDict, total=False):
    """Melt response."""

    paid: bool
    state: str
    payment_preimage: str | None
