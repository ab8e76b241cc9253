"""Invoice providers: where melted value is delivered.

The engine only needs something that can issue a bolt11 invoice for a given
amount. A host wallet can implement :class:`InvoiceProvider` directly; for
standalone use :class:`LNURLInvoiceProvider` fetches invoices from a
Lightning Address or LNURL-pay endpoint.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol, TypedDict

import bech32
import httpx

from .types import InvoiceError

logger = logging.getLogger(__name__)


class Invoice(TypedDict):
    payment_request: str


class InvoiceProvider(Protocol):
    async def make_invoice(self, amount: int, memo: str) -> Invoice:
        """Issue an invoice for ``amount`` sats or raise ``InvoiceError``."""
        ...


class LNURLData(TypedDict):
    callback_url: str
    min_sendable: int  # msat
    max_sendable: int  # msat
    comment_allowed: int


def decode_lnurl(lnurl: str) -> str | None:
    hrp, data = bech32.bech32_decode(lnurl.lower())
    if hrp != "lnurl" or data is None:
        return None
    decoded_data = bech32.convertbits(data, 5, 8, False)
    if decoded_data is None:
        return None
    return bytes(decoded_data).decode("utf-8")


def resolve_lightning_address(address: str) -> str | None:
    parts = address.split("@")
    if len(parts) != 2 or not all(parts):
        return None
    user, domain = parts
    return f"https://{domain}/.well-known/lnurlp/{user}"


def resolve_lnurl(target: str) -> str:
    """Turn a Lightning Address, bech32 LNURL or URL into an https URL."""
    target = target.strip()
    if target.lower().startswith("lightning:"):
        target = target[len("lightning:") :]

    url: str | None
    if target.lower().startswith("lnurl"):
        url = decode_lnurl(target)
    elif "@" in target:
        url = resolve_lightning_address(target)
    elif target.startswith("https://") or target.startswith("http://"):
        url = target
    else:
        url = None

    if not url:
        raise InvoiceError(f"Not a Lightning Address or LNURL: {target}")
    return url


class LNURLInvoiceProvider:
    """Fetch invoices from an LNURL-pay service (LUD-06 / LUD-16)."""

    def __init__(self, target: str, *, client: httpx.AsyncClient | None = None) -> None:
        self.target = target
        self.url = resolve_lnurl(target)
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(follow_redirects=True)
        self._data: LNURLData | None = None

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def _get(self, url: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        try:
            response = await self.client.get(url, params=params)
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPError as e:
            raise InvoiceError(f"LNURL request to {url} failed: {e}") from e
        except ValueError as e:
            raise InvoiceError(f"LNURL service returned invalid JSON: {e}") from e

        if not isinstance(body, dict):
            raise InvoiceError(f"Unexpected LNURL response: {body!r}")
        if body.get("status") == "ERROR":
            raise InvoiceError(f"Error from LNURL service: {body.get('reason')}")
        return body

    async def get_lnurl_data(self) -> LNURLData:
        if self._data is not None:
            return self._data

        data = await self._get(self.url)
        if data.get("tag") != "payRequest":
            raise InvoiceError("Invalid LNURL tag. Only payRequest is supported.")
        try:
            self._data = LNURLData(
                callback_url=data["callback"],
                min_sendable=int(data["minSendable"]),
                max_sendable=int(data["maxSendable"]),
                comment_allowed=int(data.get("commentAllowed", 0)),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise InvoiceError(f"Invalid LNURL response: {data!r}") from e
        return self._data

    async def make_invoice(self, amount: int, memo: str) -> Invoice:
        lnurl_data = await self.get_lnurl_data()
        amount_msat = amount * 1000
        if not lnurl_data["min_sendable"] <= amount_msat <= lnurl_data["max_sendable"]:
            raise InvoiceError(
                f"Amount {amount} sat is outside LNURL limits "
                f"({lnurl_data['min_sendable'] // 1000} - "
                f"{lnurl_data['max_sendable'] // 1000} sat)"
            )

        params: dict[str, Any] = {"amount": amount_msat}
        if memo and lnurl_data["comment_allowed"] > 0:
            params["comment"] = memo[: lnurl_data["comment_allowed"]]

        logger.debug("Requesting %s sat invoice from %s", amount, self.target)
        invoice_data = await self._get(lnurl_data["callback_url"], params)
        pr = invoice_data.get("pr")
        if not isinstance(pr, str) or not pr:
            raise InvoiceError("No payment request in LNURL response.")
        return Invoice(payment_request=pr)
