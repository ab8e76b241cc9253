"""Melt ecash tokens into Lightning payments to the holder's own wallet.

Melting happens in two phases. :meth:`Melter.summarize` negotiates one melt
quote per mint in the token and returns a :class:`MeltSummary` for the holder
to confirm; nothing is spent yet. :meth:`Melter.execute` then pays the quotes
one after another. Execution is not transactional across mints: when a mint
fails, earlier mints have already paid and the raised
:class:`PartialMeltFailure` carries what was delivered so far.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable

from . import token as token_codec
from .config import get_invoice_memo, get_max_rounds
from .lnurl import InvoiceProvider
from .mint import Mint, validate_mint_url
from .types import (
    FeeReserveExceeded,
    InvoiceError,
    MeltCancelled,
    MeltPayload,
    MeltQuote,
    MeltResult,
    MeltSummary,
    MintError,
    MintUnreachable,
    NegotiatedQuote,
    NoNegotiableMints,
    PartialMeltFailure,
    ProofsAlreadyConsumed,
    QuotedMelt,
    TokenBundle,
    TokenGroup,
)

logger = logging.getLogger(__name__)

MintFactory = Callable[[str], Mint]

# Errors that knock a single mint out of a summary without aborting the rest
NEGOTIATION_ERRORS = (MintError, InvoiceError, FeeReserveExceeded)


# ──────────────────────────────────────────────────────────────────────────────
# Quote negotiation
# ──────────────────────────────────────────────────────────────────────────────


class QuoteNegotiator:
    """Find a melt quote the proofs of one mint can actually pay.

    The fee reserve is only known after quoting an invoice, and an invoice
    needs an amount. The first round quotes the full proof value to learn the
    reserve; the second quotes ``full - reserve``. The second quote's reserve
    is the one charged.

    With the default ``max_rounds=2`` that is the whole protocol: a single
    approximation, not a fixed point. Tiered fee schedules can make the
    reserve for the reduced amount differ from the first one, in which case
    the second quote is still returned and the mint may reject the melt.
    ``max_rounds > 2`` opts into convergence: while the quote plus its
    reserve exceeds the proofs, requote at ``full - latest reserve``; once
    rounds run out, a quote that does not fit raises
    :class:`FeeReserveExceeded`.

    Transport and mint errors are never retried.
    """

    def __init__(
        self,
        invoice_provider: InvoiceProvider,
        get_mint: MintFactory,
        *,
        memo: str | None = None,
        max_rounds: int | None = None,
    ) -> None:
        self.invoice_provider = invoice_provider
        self._get_mint = get_mint
        self.memo = memo if memo is not None else get_invoice_memo()
        self.max_rounds = max_rounds if max_rounds is not None else get_max_rounds()
        if self.max_rounds < 2:
            raise ValueError("max_rounds must be at least 2")

    async def _quote_for(self, mint: Mint, amount: int) -> MeltQuote:
        invoice = await self.invoice_provider.make_invoice(amount, self.memo)
        payment_request = invoice.get("payment_request") if invoice else None
        if not payment_request:
            raise InvoiceError(f"Invoice provider returned no invoice for {amount} sat")
        return await mint.create_melt_quote(payment_request)

    async def negotiate(self, group: TokenGroup) -> NegotiatedQuote:
        mint = self._get_mint(group.mint)
        full_amount = group.amount

        first = await self._quote_for(mint, full_amount)
        reserve = first.fee_reserve
        logger.debug(
            "Fee reserve at %s for %s sat: %s", group.mint, full_amount, reserve
        )

        rounds = 1
        while True:
            candidate = full_amount - reserve
            if candidate <= 0:
                raise FeeReserveExceeded(
                    f"Fee reserve {reserve} at {group.mint} consumes all "
                    f"{full_amount} sat"
                )
            quote = await self._quote_for(mint, candidate)
            rounds += 1
            if quote.amount + quote.fee_reserve <= full_amount:
                break
            if self.max_rounds == 2:
                # Single approximation: the mint decides at melt time
                logger.warning(
                    "Quote %s at %s needs %s sat but proofs hold %s sat",
                    quote.quote,
                    group.mint,
                    quote.amount + quote.fee_reserve,
                    full_amount,
                )
                break
            if rounds >= self.max_rounds:
                raise FeeReserveExceeded(
                    f"Quote {quote.quote} at {group.mint} needs "
                    f"{quote.amount + quote.fee_reserve} sat but proofs hold "
                    f"{full_amount} sat"
                )
            logger.debug(
                "Fee reserve at %s moved from %s to %s, requoting",
                group.mint,
                reserve,
                quote.fee_reserve,
            )
            reserve = quote.fee_reserve

        return NegotiatedQuote(
            amount=quote.amount,
            melt_quote_id=quote.quote,
            quote_fee_reserve=quote.fee_reserve,
        )


# ──────────────────────────────────────────────────────────────────────────────
# Aggregation
# ──────────────────────────────────────────────────────────────────────────────


class MeltAggregator:
    def __init__(self, negotiator: QuoteNegotiator) -> None:
        self.negotiator = negotiator

    async def _negotiate_group(
        self, group: TokenGroup
    ) -> NegotiatedQuote | Exception:
        try:
            return await self.negotiator.negotiate(group)
        except NEGOTIATION_ERRORS as e:
            logger.warning(
                "Skipping %s (%s sat): quote negotiation failed: %s",
                group.mint,
                group.amount,
                e,
            )
            return e

    async def summarize(
        self, bundle: TokenBundle, *, concurrent: bool = False
    ) -> MeltSummary:
        """Quote every mint in ``bundle`` and collect the results in order.

        Mints that fail negotiation are left out of the summary and listed in
        ``summary.skipped``; their proofs stay in the bundle, unspent.

        Raises:
            NoNegotiableMints: if no mint could be quoted
            ProofsAlreadyConsumed: if the bundle was already summarized
        """
        for group in bundle.groups:
            if group.consumed:
                raise ProofsAlreadyConsumed(
                    f"Proofs for {group.mint} already belong to a melt payload"
                )

        if concurrent:
            outcomes = await asyncio.gather(
                *(self._negotiate_group(group) for group in bundle.groups)
            )
        else:
            outcomes = [await self._negotiate_group(group) for group in bundle.groups]

        quotes: list[QuotedMelt] = []
        skipped: list[tuple[str, Exception]] = []
        for group, outcome in zip(bundle.groups, outcomes):
            if isinstance(outcome, Exception):
                skipped.append((group.mint, outcome))
                continue
            payload = MeltPayload(
                quote=outcome["melt_quote_id"], inputs=group.take_proofs()
            )
            quotes.append(
                QuotedMelt(
                    mint=group.mint,
                    payload=payload,
                    amount=outcome["amount"] - outcome["quote_fee_reserve"],
                    fees=outcome["quote_fee_reserve"],
                )
            )

        if not quotes:
            raise NoNegotiableMints(dict(skipped))

        summary = MeltSummary(quotes=tuple(quotes), skipped=tuple(skipped))
        logger.info(
            "Quoted %d of %d mints: %s sat for %s sat fees",
            len(quotes),
            len(bundle.groups),
            summary.total_amount,
            summary.total_fees,
        )
        return summary


# ──────────────────────────────────────────────────────────────────────────────
# Execution
# ──────────────────────────────────────────────────────────────────────────────


class MeltExecutor:
    def __init__(self, get_mint: MintFactory) -> None:
        self._get_mint = get_mint
        # (mint, quote) pairs whose proofs were already sent
        self._submitted: set[tuple[str, str]] = set()

    async def execute(
        self, summary: MeltSummary, *, cancel: asyncio.Event | None = None
    ) -> MeltResult:
        """Pay each quote in summary order.

        ``cancel`` is only checked between quotes; a melt that has started is
        always allowed to finish.

        Raises:
            PartialMeltFailure: when a mint fails; nothing after it is attempted
            MeltCancelled: when ``cancel`` is set before a quote starts
            ProofsAlreadyConsumed: if any quote in ``summary`` was already
                submitted by this executor; nothing is sent
        """
        for quoted in summary.quotes:
            if (quoted.mint, quoted.payload.quote) in self._submitted:
                raise ProofsAlreadyConsumed(
                    f"Quote {quoted.payload.quote} at {quoted.mint} was already "
                    "submitted for melting"
                )

        result = MeltResult()
        for index, quoted in enumerate(summary.quotes):
            if cancel is not None and cancel.is_set():
                logger.info("Melt cancelled before quote %d", index)
                raise MeltCancelled(result, index)

            self._submitted.add((quoted.mint, quoted.payload.quote))
            try:
                response = await self._get_mint(quoted.mint).melt(quoted.payload)
            except MintError as e:
                logger.error(
                    "Melt at %s failed after delivering %s of %s sat: %s",
                    quoted.mint,
                    result.amount,
                    summary.total_amount,
                    e,
                )
                raise PartialMeltFailure(
                    result, index, requested=summary.total_amount, cause=e
                ) from e

            result.amount += quoted.amount
            result.preimages[quoted.payload.quote] = response.get("payment_preimage")
            logger.info("Melted %s sat at %s", quoted.amount, quoted.mint)

        return result


# ──────────────────────────────────────────────────────────────────────────────
# Facade
# ──────────────────────────────────────────────────────────────────────────────


class Melter:
    """Melt cashu tokens into invoices issued by ``invoice_provider``.

    Example:
        async with Melter(LNURLInvoiceProvider("me@getalby.com")) as melter:
            summary = await melter.summarize("cashuA...")
            print(f"Receive {summary.total_amount} sat, fees {summary.total_fees}")
            result = await melter.execute(summary)
    """

    def __init__(
        self,
        invoice_provider: InvoiceProvider,
        *,
        timeout: float | None = None,
        max_rounds: int | None = None,
        memo: str | None = None,
        concurrent: bool = False,
    ) -> None:
        self.invoice_provider = invoice_provider
        self.timeout = timeout
        self.concurrent = concurrent
        self.mints: dict[str, Mint] = {}

        self.negotiator = QuoteNegotiator(
            invoice_provider, self._get_mint, memo=memo, max_rounds=max_rounds
        )
        self.aggregator = MeltAggregator(self.negotiator)
        self.executor = MeltExecutor(self._get_mint)

    def _get_mint(self, mint_url: str) -> Mint:
        """Get or create mint instance for URL."""
        if mint_url not in self.mints:
            if not validate_mint_url(mint_url):
                raise MintUnreachable(f"Invalid mint URL: {mint_url}", mint_url=mint_url)
            self.mints[mint_url] = Mint(mint_url, timeout=self.timeout)
        return self.mints[mint_url]

    @staticmethod
    def decode(token: str) -> TokenBundle:
        return token_codec.decode(token)

    async def summarize(self, tokens: str | TokenBundle) -> MeltSummary:
        bundle = token_codec.decode(tokens) if isinstance(tokens, str) else tokens
        return await self.aggregator.summarize(bundle, concurrent=self.concurrent)

    async def execute(
        self, summary: MeltSummary, *, cancel: asyncio.Event | None = None
    ) -> MeltResult:
        return await self.executor.execute(summary, cancel=cancel)

    async def melt(self, tokens: str | TokenBundle) -> MeltResult:
        """Summarize and execute without a confirmation step."""
        return await self.execute(await self.summarize(tokens))

    async def aclose(self) -> None:
        """Close mint clients."""
        for mint in self.mints.values():
            await mint.aclose()

    async def __aenter__(self) -> Melter:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()
