"""nutmelt CLI - melt Cashu tokens into a Lightning wallet."""

from __future__ import annotations

import asyncio
import logging
from typing import Annotated, Optional

import typer
from rich.console import Console
from rich.prompt import Confirm
from rich.table import Table

from .config import get_lightning_address, is_mint_debug
from .lnurl import LNURLInvoiceProvider
from .melt import Melter
from .token import decode as decode_token, encode as encode_token
from .types import (
    InvalidToken,
    InvoiceError,
    MeltCancelled,
    MeltNotPaid,
    MeltSummary,
    NoNegotiableMints,
    PartialMeltFailure,
    TokenBundle,
    UnsupportedTokenVersion,
)

VERSION = "0.1.0"

app = typer.Typer(
    name="nutmelt",
    help="nutmelt - melt Cashu ecash tokens into your Lightning wallet",
    rich_markup_mode="markdown",
)
console = Console()


def handle_melt_error(e: Exception) -> None:
    """Print melt errors with the amounts the holder needs to reconcile."""
    if isinstance(e, PartialMeltFailure):
        console.print(
            f"[red]❌ Melt stopped at mint #{e.failed_at_index + 1}: {e.cause}[/red]"
        )
        console.print(
            f"[yellow]Delivered {e.partial_result.amount} of {e.requested} sat.[/yellow]"
        )
        if isinstance(e.cause, MeltNotPaid):
            console.print("[yellow]The mint did not pay the invoice.[/yellow]")
            console.print("[yellow]Proofs sent to it may already be spent.[/yellow]")
            console.print("[yellow]Check with the mint before retrying.[/yellow]")
    elif isinstance(e, MeltCancelled):
        console.print(
            f"[yellow]Cancelled. Delivered {e.partial_result.amount} sat.[/yellow]"
        )
    elif isinstance(e, UnsupportedTokenVersion):
        console.print(f"[red]❌ Unsupported token: {e}[/red]")
    elif isinstance(e, InvalidToken):
        console.print("[red]❌ Invalid token format![/red]")
    elif isinstance(e, NoNegotiableMints):
        console.print("[red]❌ No mint in this token could be quoted:[/red]")
        for mint_url, err in e.errors.items():
            console.print(f"  {mint_url}: {err}")
    elif isinstance(e, InvoiceError):
        console.print(f"[red]❌ Could not get an invoice: {e}[/red]")
    else:
        console.print(f"[red]❌ Error: {e}[/red]")


def _bundle_table(bundle: TokenBundle) -> Table:
    table = Table(title="Token")
    table.add_column("Mint")
    table.add_column("Proofs", justify="right")
    table.add_column("Amount", justify="right")
    for group in bundle.groups:
        table.add_row(group.mint, str(len(group.proofs)), str(group.amount))
    return table


def _summary_table(summary: MeltSummary) -> Table:
    table = Table(title="Melt quotes")
    table.add_column("Mint")
    table.add_column("Quote")
    table.add_column("Receive", justify="right")
    table.add_column("Fee reserve", justify="right")
    for quoted in summary.quotes:
        table.add_row(
            quoted.mint, quoted.payload.quote, str(quoted.amount), str(quoted.fees)
        )
    table.add_row(
        "[bold]Total[/bold]",
        "",
        f"[bold]{summary.total_amount}[/bold]",
        f"[bold]{summary.total_fees}[/bold]",
    )
    return table


def _print_skipped(bundle: TokenBundle, summary: MeltSummary) -> None:
    if not summary.skipped:
        return
    console.print("[yellow]⚠️  Some mints could not be quoted:[/yellow]")
    for mint_url, err in summary.skipped:
        console.print(f"  {mint_url}: {err}")
    leftover = TokenBundle(
        groups=[g for g in bundle.groups if not g.consumed],
        unit=bundle.unit,
        memo=bundle.memo,
    )
    console.print("[dim]Keep this token to melt them later:[/dim]")
    console.print(encode_token(leftover), soft_wrap=True)


def _destination(to: str | None) -> str:
    destination = to or get_lightning_address()
    if not destination:
        console.print(
            "[red]No destination. Pass --to or set NUTMELT_LIGHTNING_ADDRESS.[/red]"
        )
        raise typer.Exit(1)
    return destination


ToOption = Annotated[
    Optional[str],
    typer.Option("--to", "-t", help="Lightning Address or LNURL to receive into"),
]
RoundsOption = Annotated[
    Optional[int],
    typer.Option("--max-rounds", min=2, help="Quote rounds per mint (2 = no retry)"),
]


@app.command()
def decode(
    token: Annotated[str, typer.Argument(help="Cashu token to inspect")],
) -> None:
    """Show the mints and amounts in a token without contacting anyone."""
    try:
        bundle = decode_token(token)
    except Exception as e:
        handle_melt_error(e)
        raise typer.Exit(1)

    console.print(_bundle_table(bundle))
    console.print(f"Total: {bundle.amount} {bundle.unit or 'sat'}")
    if bundle.memo:
        console.print(f"Memo: {bundle.memo}")


@app.command()
def quote(
    token: Annotated[str, typer.Argument(help="Cashu token to quote")],
    to: ToOption = None,
    max_rounds: RoundsOption = None,
) -> None:
    """Quote a melt without spending anything.

    Every quote requests fresh invoices from the destination.
    """

    async def _quote() -> None:
        provider = LNURLInvoiceProvider(_destination(to))
        try:
            async with Melter(provider, max_rounds=max_rounds) as melter:
                bundle = melter.decode(token)
                summary = await melter.summarize(bundle)
                console.print(_summary_table(summary))
                _print_skipped(bundle, summary)
        finally:
            await provider.aclose()

    try:
        asyncio.run(_quote())
    except typer.Exit:
        raise
    except Exception as e:
        handle_melt_error(e)
        raise typer.Exit(1)


@app.command()
def melt(
    token: Annotated[str, typer.Argument(help="Cashu token to melt")],
    to: ToOption = None,
    max_rounds: RoundsOption = None,
    concurrent: Annotated[
        bool, typer.Option("--concurrent", help="Quote mints concurrently")
    ] = False,
    confirm: Annotated[
        bool, typer.Option("--yes", "-y", help="Skip confirmation prompt")
    ] = False,
) -> None:
    """Melt a Cashu token into your Lightning wallet.

    Example:
        nutmelt melt --to user@getalby.com cashuA...
    """

    async def _melt() -> None:
        provider = LNURLInvoiceProvider(_destination(to))
        try:
            async with Melter(
                provider, max_rounds=max_rounds, concurrent=concurrent
            ) as melter:
                bundle = melter.decode(token)
                console.print("[blue]Requesting melt quotes...[/blue]")
                summary = await melter.summarize(bundle)
                console.print(_summary_table(summary))
                _print_skipped(bundle, summary)

                if not confirm and not Confirm.ask(
                    f"Receive {summary.total_amount} sat "
                    f"(fee reserve {summary.total_fees} sat)?"
                ):
                    console.print("[yellow]Cancelled. Nothing was spent.[/yellow]")
                    return

                result = await melter.execute(summary)
                console.print(
                    f"[green]✅ Received {result.amount} sat at {provider.target}![/green]"
                )
        finally:
            await provider.aclose()

    try:
        asyncio.run(_melt())
    except typer.Exit:
        raise
    except Exception as e:
        handle_melt_error(e)
        raise typer.Exit(1)


def version_callback(value: bool) -> None:
    """Handle version flag."""
    if value:
        console.print(f"nutmelt v{VERSION}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        Optional[bool],
        typer.Option("--version", callback=version_callback, help="Show version"),
    ] = None,
    verbose: Annotated[
        bool, typer.Option("--verbose", "-v", help="Log mint and invoice requests")
    ] = False,
) -> None:
    """nutmelt - melt Cashu ecash tokens into your Lightning wallet.

    ⚡ DESTINATION:
    • --to user@getalby.com (Lightning Address or LNURL)
    • Environment variable or cwd/.env: NUTMELT_LIGHTNING_ADDRESS="user@getalby.com"

    ⚙️  TUNING (environment or .env):
    • CASHU_MINT_TIMEOUT=30 (seconds per mint request)
    • NUTMELT_MAX_ROUNDS=2 (quote rounds per mint)
    • MINT_DEBUG=true (log every mint request)
    """
    level = logging.DEBUG if verbose or is_mint_debug() else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    logging.getLogger("nutmelt").setLevel(level)


def cli() -> None:
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    cli()
