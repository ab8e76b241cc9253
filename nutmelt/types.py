"""Type definitions for the nutmelt package following NUT-00 specifications."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, TypedDict


class ProofRequired(TypedDict):
    id: str
    amount: int
    secret: str
    C: str


class Proof(ProofRequired, total=False):
    """Ecash proof as carried inside a token (NUT-00).

    The engine never inspects ``secret`` or ``C``; they are forwarded to the
    mint as-is together with any optional witness/DLEQ data.
    """

    witness: str
    dleq: dict[str, Any]


# Standard currency units as per NUT-00 specification
CurrencyUnit = Literal["sat", "msat", "usd", "eur"]


# ──────────────────────────────────────────────────────────────────────────────
# Errors
# ──────────────────────────────────────────────────────────────────────────────


class TokenError(ValueError):
    """Base class for token decoding errors."""


class InvalidToken(TokenError):
    """Raised when text is not a well-formed cashu token."""


class UnsupportedTokenVersion(InvalidToken):
    """Raised for token encodings this engine refuses to interpret."""


class MintError(Exception):
    """Base exception for mint errors."""

    def __init__(self, message: str, *, mint_url: str | None = None) -> None:
        super().__init__(message)
        self.mint_url = mint_url


class MintUnreachable(MintError):
    """Transport failure or timeout talking to a mint."""


class MintRejected(MintError):
    """Mint answered a request with an error response."""

    def __init__(
        self,
        message: str,
        *,
        mint_url: str | None = None,
        status_code: int | None = None,
        detail: str | None = None,
    ) -> None:
        super().__init__(message, mint_url=mint_url)
        self.status_code = status_code
        self.detail = detail


class MintRejectedQuote(MintRejected):
    """Mint answered a melt quote request with an error."""


class MintRejectedMelt(MintRejected):
    """Mint answered a melt request with an error."""


class MeltNotPaid(MintError):
    """Mint accepted the melt but reports the invoice as not paid.

    The submitted proofs may or may not have been consumed by the mint.
    """

    def __init__(
        self,
        message: str,
        *,
        mint_url: str | None = None,
        quote: str | None = None,
        state: str | None = None,
    ) -> None:
        super().__init__(message, mint_url=mint_url)
        self.quote = quote
        self.state = state


class InvoiceError(Exception):
    """Base exception for invoice provider errors."""


class MeltError(Exception):
    """Base class for melt negotiation and execution errors."""


class ProofsAlreadyConsumed(MeltError):
    """Raised when proofs are taken or submitted for melting a second time."""


class FeeReserveExceeded(MeltError):
    """The mint's fee reserve leaves nothing payable for the proofs at hand."""


class NoNegotiableMints(MeltError):
    """Every mint in the bundle failed quote negotiation."""

    def __init__(self, errors: dict[str, Exception]) -> None:
        details = "; ".join(f"{mint}: {err}" for mint, err in errors.items())
        super().__init__(f"No mint could be quoted ({details})")
        self.errors = errors


class PartialMeltFailure(MeltError):
    """Execution stopped at ``failed_at_index``.

    Quotes before that index were paid and are included in
    ``partial_result``; the failed quote's proofs may or may not be spent.
    """

    def __init__(
        self,
        partial_result: MeltResult,
        failed_at_index: int,
        *,
        requested: int,
        cause: Exception,
    ) -> None:
        super().__init__(
            f"Melt failed at quote {failed_at_index}: delivered "
            f"{partial_result.amount} of {requested} ({cause})"
        )
        self.partial_result = partial_result
        self.failed_at_index = failed_at_index
        self.requested = requested
        self.cause = cause


class MeltCancelled(MeltError):
    """Execution was cancelled before quote ``stopped_at_index`` started."""

    def __init__(self, partial_result: MeltResult, stopped_at_index: int) -> None:
        super().__init__(
            f"Melt cancelled before quote {stopped_at_index}; "
            f"delivered {partial_result.amount}"
        )
        self.partial_result = partial_result
        self.stopped_at_index = stopped_at_index


# ──────────────────────────────────────────────────────────────────────────────
# Tokens
# ──────────────────────────────────────────────────────────────────────────────


class TokenGroup:
    """Proofs drawn from a single mint.

    The group owns its proofs until :meth:`take_proofs` moves them out; after
    that the group is consumed and cannot fund another payload.
    """

    __slots__ = ("mint", "_proofs", "_consumed")

    def __init__(self, mint: str, proofs: list[Proof] | tuple[Proof, ...]) -> None:
        self.mint = mint
        self._proofs: tuple[Proof, ...] = tuple(proofs)
        self._consumed = False

    @property
    def proofs(self) -> tuple[Proof, ...]:
        return self._proofs

    @property
    def amount(self) -> int:
        return sum(proof["amount"] for proof in self._proofs)

    @property
    def consumed(self) -> bool:
        return self._consumed

    def take_proofs(self) -> tuple[Proof, ...]:
        """Move the proofs out of this group."""
        if self._consumed:
            raise ProofsAlreadyConsumed(
                f"Proofs for {self.mint} were already moved into a melt payload"
            )
        self._consumed = True
        return self._proofs

    def __repr__(self) -> str:
        state = " consumed" if self._consumed else ""
        return f"TokenGroup({self.mint!r}, {len(self._proofs)} proofs, {self.amount}{state})"


@dataclass
class TokenBundle:
    """Decoded token: one group per mint plus optional metadata."""

    groups: list[TokenGroup]
    unit: str | None = None
    memo: str | None = None

    @property
    def amount(self) -> int:
        return sum(group.amount for group in self.groups)

    @property
    def mints(self) -> list[str]:
        return [group.mint for group in self.groups]


# ──────────────────────────────────────────────────────────────────────────────
# Melt
# ──────────────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class MeltQuote:
    """A mint's single-use commitment to pay one invoice."""

    quote: str
    amount: int  # invoice amount the mint pays out
    fee_reserve: int
    expiry: int | None = None

    @property
    def net_amount(self) -> int:
        return self.amount - self.fee_reserve


class NegotiatedQuote(TypedDict):
    amount: int
    melt_quote_id: str
    quote_fee_reserve: int


@dataclass(frozen=True)
class MeltPayload:
    """Wire-ready melt request: quote id plus the proofs funding it."""

    quote: str
    inputs: tuple[Proof, ...]

    def to_json(self) -> dict[str, Any]:
        return {"quote": self.quote, "inputs": [dict(p) for p in self.inputs]}


@dataclass(frozen=True)
class QuotedMelt:
    mint: str
    payload: MeltPayload
    amount: int  # net amount credited to the holder
    fees: int


@dataclass(frozen=True)
class MeltSummary:
    """Everything the holder confirms before any proofs are spent."""

    quotes: tuple[QuotedMelt, ...]
    skipped: tuple[tuple[str, Exception], ...] = ()

    @property
    def total_fees(self) -> int:
        return sum(q.fees for q in self.quotes)

    @property
    def total_amount(self) -> int:
        return sum(q.amount for q in self.quotes)


@dataclass
class MeltResult:
    """Value delivered by the mints that reported the payment as done."""

    amount: int = 0  # in the token unit (sat)
    preimages: dict[str, str | None] = field(default_factory=dict)  # quote -> preimage

    @property
    def msats(self) -> int:
        """Wallet-side name for ``amount``; the value is still in sat."""
        return self.amount
