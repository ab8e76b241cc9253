"""Unit tests for melt quote negotiation, aggregation and execution."""

import asyncio
from unittest.mock import AsyncMock, Mock

import httpx
import pytest

from nutmelt.melt import MeltAggregator, MeltExecutor, Melter, QuoteNegotiator
from nutmelt.mint import Mint
from nutmelt.types import (
    FeeReserveExceeded,
    InvoiceError,
    MeltCancelled,
    MeltNotPaid,
    MeltPayload,
    MeltQuote,
    MeltSummary,
    MintRejectedMelt,
    MintRejectedQuote,
    MintUnreachable,
    NoNegotiableMints,
    PartialMeltFailure,
    ProofsAlreadyConsumed,
    QuotedMelt,
    TokenBundle,
    TokenGroup,
)

MINT_A = "https://mint-a.example"
MINT_B = "https://mint-b.example"


def proofs(*amounts, keyset="009a1f293253e41e"):
    return [
        {"id": keyset, "amount": amount, "secret": f"secret{i}", "C": f"02{i:02x}"}
        for i, amount in enumerate(amounts)
    ]


class FakeInvoices:
    """Invoice provider that records requested amounts."""

    def __init__(self):
        self.amounts = []

    async def make_invoice(self, amount, memo):
        self.amounts.append(amount)
        return {"payment_request": f"lnbc{amount}"}


def fake_mint(*quotes):
    mint = Mock()
    mint.create_melt_quote = AsyncMock(side_effect=list(quotes))
    mint.melt = AsyncMock(return_value={"paid": True, "payment_preimage": "00" * 32})
    return mint


def negotiator_for(mints, invoices=None, **kwargs):
    return QuoteNegotiator(
        invoices or FakeInvoices(), mints.__getitem__, memo="cashu melt", **kwargs
    )


class TestQuoteNegotiator:
    @pytest.mark.asyncio
    async def test_two_round_negotiation(self):
        invoices = FakeInvoices()
        mint = fake_mint(MeltQuote("q0", 1000, 20), MeltQuote("q1", 980, 15))
        negotiator = negotiator_for({MINT_A: mint}, invoices)

        result = await negotiator.negotiate(TokenGroup(MINT_A, proofs(500, 300, 200)))

        assert invoices.amounts == [1000, 980]
        assert mint.create_melt_quote.await_args_list[0].args == ("lnbc1000",)
        assert mint.create_melt_quote.await_args_list[1].args == ("lnbc980",)
        assert result == {
            "amount": 980,
            "melt_quote_id": "q1",
            "quote_fee_reserve": 15,
        }

    @pytest.mark.asyncio
    async def test_single_iteration_keeps_short_quote(self):
        # Reserve jumps for the reduced amount; default mode does not requote
        mint = fake_mint(MeltQuote("q0", 100, 2), MeltQuote("q1", 98, 4))
        negotiator = negotiator_for({MINT_A: mint})

        result = await negotiator.negotiate(TokenGroup(MINT_A, proofs(64, 32, 4)))

        assert mint.create_melt_quote.await_count == 2
        assert result["melt_quote_id"] == "q1"

    @pytest.mark.asyncio
    async def test_bounded_rounds_converge(self):
        invoices = FakeInvoices()
        mint = fake_mint(
            MeltQuote("q0", 100, 2),
            MeltQuote("q1", 98, 4),
            MeltQuote("q2", 96, 4),
        )
        negotiator = negotiator_for({MINT_A: mint}, invoices, max_rounds=4)

        result = await negotiator.negotiate(TokenGroup(MINT_A, proofs(64, 32, 4)))

        assert invoices.amounts == [100, 98, 96]
        assert result["melt_quote_id"] == "q2"
        assert result["amount"] + result["quote_fee_reserve"] <= 100

    @pytest.mark.asyncio
    async def test_bounded_rounds_give_up(self):
        mint = fake_mint(
            MeltQuote("q0", 100, 2),
            MeltQuote("q1", 98, 4),
            MeltQuote("q2", 96, 8),
        )
        negotiator = negotiator_for({MINT_A: mint}, max_rounds=3)

        with pytest.raises(FeeReserveExceeded):
            await negotiator.negotiate(TokenGroup(MINT_A, proofs(64, 32, 4)))
        assert mint.create_melt_quote.await_count == 3

    @pytest.mark.asyncio
    async def test_reserve_consuming_everything(self):
        mint = fake_mint(MeltQuote("q0", 2, 2))
        negotiator = negotiator_for({MINT_A: mint})

        with pytest.raises(FeeReserveExceeded):
            await negotiator.negotiate(TokenGroup(MINT_A, proofs(2)))

    @pytest.mark.asyncio
    async def test_failure_in_second_round_propagates(self):
        mint = fake_mint(MeltQuote("q0", 1000, 20), MintUnreachable("down"))
        negotiator = negotiator_for({MINT_A: mint})

        with pytest.raises(MintUnreachable):
            await negotiator.negotiate(TokenGroup(MINT_A, proofs(1000)))
        assert mint.create_melt_quote.await_count == 2

    @pytest.mark.asyncio
    async def test_empty_invoice_is_an_error(self):
        invoices = Mock()
        invoices.make_invoice = AsyncMock(return_value={"payment_request": ""})
        mint = fake_mint()
        negotiator = negotiator_for({MINT_A: mint}, invoices)

        with pytest.raises(InvoiceError):
            await negotiator.negotiate(TokenGroup(MINT_A, proofs(10)))
        mint.create_melt_quote.assert_not_awaited()

    def test_max_rounds_must_allow_two_rounds(self):
        with pytest.raises(ValueError):
            negotiator_for({}, max_rounds=1)


class TestMeltAggregator:
    @pytest.mark.asyncio
    async def test_single_mint_summary(self):
        mint = fake_mint(MeltQuote("q0", 1000, 20), MeltQuote("q1", 980, 15))
        group = TokenGroup(MINT_A, proofs(500, 300, 200))
        aggregator = MeltAggregator(negotiator_for({MINT_A: mint}))

        summary = await aggregator.summarize(TokenBundle(groups=[group]))

        assert summary.total_amount == 965
        assert summary.total_fees == 15
        assert len(summary.quotes) == 1
        quoted = summary.quotes[0]
        assert quoted.mint == MINT_A
        assert quoted.payload == MeltPayload(quote="q1", inputs=tuple(proofs(500, 300, 200)))
        # Amount credited plus fees equals the proofs minus the first-round reserve
        assert summary.total_amount + summary.total_fees == 1000 - 20

    @pytest.mark.asyncio
    async def test_failed_mint_is_skipped(self, caplog):
        mint_a = fake_mint(MeltQuote("q0", 500, 0), MeltQuote("qa", 500, 0))
        mint_b = fake_mint(MintUnreachable("connection refused", mint_url=MINT_B))
        group_a = TokenGroup(MINT_A, proofs(256, 244))
        group_b = TokenGroup(MINT_B, proofs(100))
        aggregator = MeltAggregator(negotiator_for({MINT_A: mint_a, MINT_B: mint_b}))

        with caplog.at_level("WARNING", logger="nutmelt.melt"):
            summary = await aggregator.summarize(
                TokenBundle(groups=[group_a, group_b])
            )

        assert [q.mint for q in summary.quotes] == [MINT_A]
        assert summary.total_amount == 500
        assert summary.skipped[0][0] == MINT_B
        assert isinstance(summary.skipped[0][1], MintUnreachable)
        assert group_a.consumed
        assert not group_b.consumed
        assert MINT_B in caplog.text

    @pytest.mark.asyncio
    async def test_m_of_n_mints(self):
        mints = {
            "https://m1": fake_mint(MeltQuote("p", 100, 2), MeltQuote("q1", 98, 2)),
            "https://m2": fake_mint(MintRejectedQuote("bad invoice")),
            "https://m3": fake_mint(MeltQuote("p", 50, 1), MeltQuote("q3", 49, 1)),
        }
        bundle = TokenBundle(
            groups=[
                TokenGroup("https://m1", proofs(64, 32, 4)),
                TokenGroup("https://m2", proofs(8)),
                TokenGroup("https://m3", proofs(32, 16, 2)),
            ]
        )
        summary = await MeltAggregator(negotiator_for(mints)).summarize(bundle)

        assert len(summary.quotes) == 2
        assert summary.total_amount == sum(q.amount for q in summary.quotes) == 96 + 48
        assert summary.total_fees == 3

    @pytest.mark.asyncio
    async def test_all_mints_failing(self):
        mints = {
            MINT_A: fake_mint(MintUnreachable("down")),
            MINT_B: fake_mint(MintRejectedQuote("nope")),
        }
        bundle = TokenBundle(
            groups=[TokenGroup(MINT_A, proofs(1)), TokenGroup(MINT_B, proofs(2))]
        )

        with pytest.raises(NoNegotiableMints) as exc_info:
            await MeltAggregator(negotiator_for(mints)).summarize(bundle)
        assert set(exc_info.value.errors) == {MINT_A, MINT_B}

    @pytest.mark.asyncio
    async def test_unexpected_errors_propagate(self):
        mints = {MINT_A: fake_mint(RuntimeError("bug"))}
        bundle = TokenBundle(groups=[TokenGroup(MINT_A, proofs(1))])

        with pytest.raises(RuntimeError):
            await MeltAggregator(negotiator_for(mints)).summarize(bundle)

    @pytest.mark.asyncio
    async def test_bundle_cannot_be_summarized_twice(self):
        mint = fake_mint(
            MeltQuote("p", 10, 0), MeltQuote("q", 10, 0), MeltQuote("p", 10, 0)
        )
        aggregator = MeltAggregator(negotiator_for({MINT_A: mint}))
        bundle = TokenBundle(groups=[TokenGroup(MINT_A, proofs(8, 2))])

        await aggregator.summarize(bundle)
        with pytest.raises(ProofsAlreadyConsumed):
            await aggregator.summarize(bundle)
        assert mint.create_melt_quote.await_count == 2

    @pytest.mark.asyncio
    async def test_concurrent_keeps_bundle_order(self):
        async def slow_quote(request):
            await asyncio.sleep(0.01)
            return MeltQuote("qa-" + request, 10, 0)

        slow = Mock()
        slow.create_melt_quote = AsyncMock(side_effect=slow_quote)
        fast = fake_mint(MeltQuote("p", 20, 0), MeltQuote("qb", 20, 0))
        bundle = TokenBundle(
            groups=[TokenGroup(MINT_A, proofs(8, 2)), TokenGroup(MINT_B, proofs(16, 4))]
        )
        aggregator = MeltAggregator(negotiator_for({MINT_A: slow, MINT_B: fast}))

        summary = await aggregator.summarize(bundle, concurrent=True)

        assert [q.mint for q in summary.quotes] == [MINT_A, MINT_B]
        assert summary.total_amount == 30


def make_summary(*amounts):
    return MeltSummary(
        quotes=tuple(
            QuotedMelt(
                mint=f"https://mint-{i}.example",
                payload=MeltPayload(quote=f"q{i}", inputs=tuple(proofs(amount))),
                amount=amount,
                fees=1,
            )
            for i, amount in enumerate(amounts)
        )
    )


class TestMeltExecutor:
    @pytest.mark.asyncio
    async def test_pays_all_quotes_in_order(self):
        mint = fake_mint()
        executor = MeltExecutor(lambda url: mint)

        result = await executor.execute(make_summary(500, 300))

        assert result.amount == 800
        assert result.msats == 800
        assert [c.args[0].quote for c in mint.melt.await_args_list] == ["q0", "q1"]
        assert result.preimages == {"q0": "00" * 32, "q1": "00" * 32}

    @pytest.mark.asyncio
    async def test_second_quote_not_paid(self):
        mint = fake_mint()
        mint.melt.side_effect = [
            {"paid": True},
            MeltNotPaid("Lightning payment failed", quote="q1"),
        ]
        executor = MeltExecutor(lambda url: mint)

        with pytest.raises(PartialMeltFailure) as exc_info:
            await executor.execute(make_summary(500, 300))

        assert exc_info.value.partial_result.amount == 500
        assert exc_info.value.failed_at_index == 1
        assert exc_info.value.requested == 800
        assert isinstance(exc_info.value.cause, MeltNotPaid)

    @pytest.mark.parametrize(
        "error", [MintUnreachable("down"), MintRejectedMelt("spent"), MeltNotPaid("no")]
    )
    @pytest.mark.asyncio
    async def test_stops_at_failing_quote(self, error):
        mint = fake_mint()
        mint.melt.side_effect = [{"paid": True}, {"paid": True}, error, {"paid": True}]
        executor = MeltExecutor(lambda url: mint)

        with pytest.raises(PartialMeltFailure) as exc_info:
            await executor.execute(make_summary(10, 20, 30, 40))

        assert exc_info.value.partial_result.amount == 30
        assert exc_info.value.failed_at_index == 2
        assert mint.melt.await_count == 3

    @pytest.mark.asyncio
    async def test_first_quote_failing_delivers_nothing(self):
        mint = fake_mint()
        mint.melt.side_effect = MintUnreachable("down")

        with pytest.raises(PartialMeltFailure) as exc_info:
            await MeltExecutor(lambda url: mint).execute(make_summary(10, 20))

        assert exc_info.value.partial_result.amount == 0
        assert exc_info.value.failed_at_index == 0
        assert mint.melt.await_count == 1

    @pytest.mark.asyncio
    async def test_cancel_before_start(self):
        mint = fake_mint()
        cancel = asyncio.Event()
        cancel.set()

        with pytest.raises(MeltCancelled) as exc_info:
            await MeltExecutor(lambda url: mint).execute(make_summary(10), cancel=cancel)

        assert exc_info.value.stopped_at_index == 0
        assert exc_info.value.partial_result.amount == 0
        mint.melt.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_cancel_takes_effect_between_quotes(self):
        cancel = asyncio.Event()

        async def melt(payload):
            cancel.set()  # requested while the first melt is in flight
            return {"paid": True}

        mint = fake_mint()
        mint.melt.side_effect = melt

        with pytest.raises(MeltCancelled) as exc_info:
            await MeltExecutor(lambda url: mint).execute(
                make_summary(10, 20), cancel=cancel
            )

        assert exc_info.value.stopped_at_index == 1
        assert exc_info.value.partial_result.amount == 10
        assert mint.melt.await_count == 1

    @pytest.mark.asyncio
    async def test_undecodable_response_keeps_partial_result(self):
        def paid(request):
            return httpx.Response(200, json={"paid": True, "payment_preimage": "ab"})

        def corrupt(request):
            return httpx.Response(
                200, headers={"Content-Encoding": "gzip"}, content=b"notgzip"
            )

        mints = {
            f"https://mint-{i}.example": Mint(
                f"https://mint-{i}.example",
                client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
            )
            for i, handler in enumerate([paid, corrupt])
        }

        with pytest.raises(PartialMeltFailure) as exc_info:
            await MeltExecutor(mints.__getitem__).execute(make_summary(8, 4))

        assert exc_info.value.partial_result.amount == 8
        assert exc_info.value.failed_at_index == 1
        assert isinstance(exc_info.value.cause, MintUnreachable)

    @pytest.mark.asyncio
    async def test_summary_cannot_be_executed_twice(self):
        mint = fake_mint()
        executor = MeltExecutor(lambda url: mint)
        summary = make_summary(10, 20)
        await executor.execute(summary)

        with pytest.raises(ProofsAlreadyConsumed):
            await executor.execute(summary)
        assert mint.melt.await_count == 2

    @pytest.mark.asyncio
    async def test_failed_summary_is_not_resubmitted(self):
        mint = fake_mint()
        mint.melt.side_effect = [{"paid": True}, MeltNotPaid("no"), {"paid": True}]
        executor = MeltExecutor(lambda url: mint)
        summary = make_summary(10, 20)
        with pytest.raises(PartialMeltFailure):
            await executor.execute(summary)

        with pytest.raises(ProofsAlreadyConsumed):
            await executor.execute(summary)
        assert mint.melt.await_count == 2


class TestMelter:
    @pytest.mark.asyncio
    async def test_summarize_and_execute(self):
        mint = fake_mint(MeltQuote("q0", 1000, 20), MeltQuote("q1", 980, 15))
        melter = Melter(FakeInvoices(), max_rounds=2, memo="cashu melt")
        melter.mints[MINT_A] = mint

        summary = await melter.summarize(
            TokenBundle(groups=[TokenGroup(MINT_A, proofs(500, 300, 200))])
        )
        result = await melter.execute(summary)

        assert summary.total_amount == 965
        assert result.amount == 965
        mint.melt.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_melt_one_shot(self):
        mint = fake_mint(MeltQuote("q0", 10, 0), MeltQuote("q1", 10, 0))
        async with Melter(FakeInvoices(), max_rounds=2) as melter:
            melter.mints[MINT_A] = Mock(
                create_melt_quote=mint.create_melt_quote,
                melt=mint.melt,
                aclose=AsyncMock(),
            )
            result = await melter.melt(
                TokenBundle(groups=[TokenGroup(MINT_A, proofs(8, 2))])
            )
        assert result.amount == 10
        melter.mints[MINT_A].aclose.assert_awaited_once()

    def test_get_mint_caches_instances(self):
        melter = Melter(FakeInvoices(), max_rounds=2, timeout=5)
        assert melter._get_mint(MINT_A) is melter._get_mint(MINT_A)
        assert melter._get_mint(MINT_A).url == MINT_A


class TestTokenGroupOwnership:
    def test_take_proofs_once(self):
        group = TokenGroup(MINT_A, proofs(1, 2))
        taken = group.take_proofs()
        assert [p["amount"] for p in taken] == [1, 2]
        assert group.consumed
        with pytest.raises(ProofsAlreadyConsumed):
            group.take_proofs()

    def test_payload_is_immutable(self):
        payload = MeltPayload(quote="q", inputs=tuple(proofs(1)))
        with pytest.raises(AttributeError):
            payload.quote = "other"


@pytest.mark.parametrize("bad_url", ["mint.example", "https://bad host:xx", "https://"])
@pytest.mark.asyncio
async def test_invalid_mint_url_is_skipped(bad_url):
    melter = Melter(FakeInvoices(), max_rounds=2, memo="cashu melt")
    melter.mints[MINT_A] = fake_mint(MeltQuote("p", 10, 0), MeltQuote("q", 10, 0))
    bundle = TokenBundle(
        groups=[TokenGroup(MINT_A, proofs(8, 2)), TokenGroup(bad_url, proofs(4))]
    )

    summary = await melter.summarize(bundle)

    assert [q.mint for q in summary.quotes] == [MINT_A]
    assert summary.skipped[0][0] == bad_url
    assert isinstance(summary.skipped[0][1], MintUnreachable)
