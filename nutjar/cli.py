"""nutjar CLI - multi-mint Cashu wallet with nutzaps."""

from __future__ import annotations

import asyncio
import logging
import os
import time
from datetime import datetime
from pathlib import Path
from typing import Annotated, Any, Awaitable, Callable, Optional

import qrcode
import typer
from dotenv import load_dotenv
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .config import Settings
from .history import HISTORY_KINDS
from .relay import NostrTransport, RelayPool
from .signer import LocalKeySigner
from .types import (
    AmbiguousMeltState,
    InsufficientBalance,
    QuoteExpired,
    WalletError,
)
from .wallet import Wallet

__version__ = "0.1.0"

app = typer.Typer(
    name="nutjar",
    help="nutjar - multi-mint Cashu wallet CLI",
    rich_markup_mode="markdown",
)
console = Console()

_state: dict[str, Any] = {"nsec": None, "data_dir": None}


# ──────────────────────────────────────────────────────────────────────────────
# Helpers
# ──────────────────────────────────────────────────────────────────────────────


async def open_wallet(mint_urls: list[str] | None = None) -> Wallet:
    """Open the wallet in the data dir, creating it on first use.

    Nostr features are enabled when an NSEC is configured; relays come from
    NOSTR_RELAYS.
    """
    settings = Settings.from_env()
    if _state["data_dir"] is not None:
        settings.data_dir = _state["data_dir"]
    nsec = _state["nsec"] or os.getenv("NSEC")

    signer = LocalKeySigner(nsec.strip()) if nsec else None
    transport = None
    if signer is not None and settings.relay_urls:
        transport = NostrTransport(RelayPool(settings.relay_urls), signer)

    return await Wallet.open(
        settings.data_dir,
        list(mint_urls or settings.mint_urls),
        signer=signer,
        transport=transport,
        settings=settings,
    )


def run(coro_fn: Callable[[Wallet], Awaitable[None]], mint_urls: list[str] | None = None) -> None:
    """Run a command body against an opened wallet, mapping errors to exit 1."""

    async def _run() -> None:
        async with await open_wallet(mint_urls) as wallet:
            await coro_fn(wallet)

    try:
        asyncio.run(_run())
    except WalletError as e:
        handle_wallet_error(e)
        raise typer.Exit(1)


def handle_wallet_error(e: WalletError) -> None:
    """Print wallet errors in a user-friendly form."""
    if isinstance(e, InsufficientBalance):
        console.print(f"[red]💰 {e}[/red]")
    elif isinstance(e, AmbiguousMeltState):
        console.print(f"[yellow]⏳ {e}[/yellow]")
        console.print("[dim]Run `nutjar recover` later to settle it.[/dim]")
    elif isinstance(e, QuoteExpired):
        console.print(f"[red]⌛ {e}[/red]")
    else:
        console.print(f"[red]❌ {e}[/red]")


def _matrix_to_text(matrix: list[list[bool]]) -> str:
    """Render a QR matrix with half blocks, two rows per line."""
    lines = []
    for y in range(0, len(matrix), 2):
        line = ""
        for x in range(len(matrix[y])):
            top = matrix[y][x]
            bottom = matrix[y + 1][x] if y + 1 < len(matrix) else False
            if top and bottom:
                line += "█"
            elif top:
                line += "▀"
            elif bottom:
                line += "▄"
            else:
                line += " "
        lines.append(line)
    return "\n".join(lines)


def display_qr_code(data: str, title: str = "QR Code") -> None:
    qr = qrcode.QRCode(
        version=1,
        error_correction=qrcode.constants.ERROR_CORRECT_L,
        box_size=1,
        border=1,
    )
    qr.add_data(data.upper() if data.lower().startswith("ln") else data)
    qr.make(fit=True)
    console.print(
        Panel(
            _matrix_to_text(qr.get_matrix()),
            title=f"[cyan]📱 {title}[/cyan]",
            border_style="cyan",
            padding=(0, 1),
        )
    )


def _print_balance(wallet: Wallet) -> None:
    table = Table(title="Balance by mint")
    table.add_column("Mint", style="cyan")
    table.add_column("Balance", justify="right", style="green")
    for url, amount in wallet.balance_by_mint().items():
        table.add_row(url, f"{amount} {wallet.unit}")
    console.print(table)
    console.print(f"[bold]Total: {wallet.balance()} {wallet.unit}[/bold]")


# ──────────────────────────────────────────────────────────────────────────────
# Commands
# ──────────────────────────────────────────────────────────────────────────────


@app.command()
def balance(
    mint_urls: Annotated[
        Optional[list[str]], typer.Option("--mint", "-m", help="Mint URLs")
    ] = None,
    validate: Annotated[
        bool, typer.Option("--validate/--no-validate", help="Drop proofs the mints report spent")
    ] = False,
) -> None:
    """Show wallet balance per mint."""

    async def _balance(wallet: Wallet) -> None:
        if validate:
            removed = await wallet.refresh()
            if removed:
                console.print(f"[yellow]Dropped {len(removed)} spent proofs[/yellow]")
        _print_balance(wallet)

    run(_balance, mint_urls)


@app.command("add-mint")
def add_mint(
    url: Annotated[str, typer.Argument(help="Mint URL")],
) -> None:
    """Add a mint to the wallet."""

    async def _add(wallet: Wallet) -> None:
        mint_url = await wallet.add_mint(url)
        console.print(f"[green]✅ Added {mint_url}[/green]")

    run(_add)


@app.command()
def invoice(
    amount: Annotated[int, typer.Argument(help="Amount in sats")],
    mint_url: Annotated[
        Optional[str], typer.Option("--mint", "-m", help="Mint to receive at")
    ] = None,
    wait: Annotated[
        bool, typer.Option("--wait/--no-wait", help="Poll until the invoice is paid")
    ] = True,
    interval: Annotated[float, typer.Option(help="Seconds between polls")] = 3.0,
    timeout: Annotated[int, typer.Option(help="Give up waiting after N seconds")] = 600,
    qr: Annotated[bool, typer.Option("--qr/--no-qr", help="Show invoice QR code")] = True,
) -> None:
    """Create a Lightning invoice that mints ecash once paid."""

    async def _invoice(wallet: Wallet) -> None:
        inv = await wallet.create_invoice(amount, mint_url=mint_url)
        console.print(f"\n[bold]Pay this invoice:[/bold]\n{inv.invoice}\n")
        console.print(f"[dim]Quote id: {inv.quote_id}[/dim]")
        if qr:
            display_qr_code(inv.invoice, "Lightning invoice")
        if not wait:
            console.print(f"[dim]Claim later with `nutjar claim {inv.quote_id}`[/dim]")
            return

        deadline = time.monotonic() + timeout
        with console.status("Waiting for payment..."):
            while time.monotonic() < deadline:
                if await wallet.check_and_claim(inv.quote_id):
                    console.print(f"[green]✅ Received {inv.amount} sats[/green]")
                    console.print(f"Balance: {wallet.balance()} sats")
                    return
                await asyncio.sleep(interval)
        console.print(
            f"[yellow]Not paid yet. Claim later with `nutjar claim {inv.quote_id}`[/yellow]"
        )

    run(_invoice)


@app.command()
def claim(
    quote_id: Annotated[str, typer.Argument(help="Mint quote id")],
) -> None:
    """Check a mint quote once and claim its ecash if paid."""

    async def _claim(wallet: Wallet) -> None:
        if await wallet.check_and_claim(quote_id):
            console.print(f"[green]✅ Quote {quote_id} claimed[/green]")
            console.print(f"Balance: {wallet.balance()} sats")
        else:
            console.print(f"[yellow]Quote {quote_id} is not paid yet[/yellow]")

    run(_claim)


@app.command()
def pay(
    bolt11: Annotated[str, typer.Argument(help="Lightning invoice (bolt11)")],
    mint_url: Annotated[
        Optional[str], typer.Option("--mint", "-m", help="Mint to pay from")
    ] = None,
) -> None:
    """Pay a Lightning invoice with ecash."""

    async def _pay(wallet: Wallet) -> None:
        console.print("[blue]Paying Lightning invoice...[/blue]")
        result = await wallet.pay_invoice(bolt11, mint_url=mint_url)
        console.print(
            f"[green]✅ Paid {result.amount} sats (fee {result.fee_paid} sats)[/green]"
        )
        if result.preimage:
            console.print(f"[dim]Preimage: {result.preimage}[/dim]")
        console.print(f"Remaining balance: {wallet.balance()} sats")

    run(_pay)


@app.command()
def send(
    amount: Annotated[int, typer.Argument(help="Amount in sats")],
    mint_url: Annotated[
        Optional[str], typer.Option("--mint", "-m", help="Mint to send from")
    ] = None,
    memo: Annotated[Optional[str], typer.Option(help="Memo embedded in the token")] = None,
    v3: Annotated[bool, typer.Option("--v3", help="Emit a legacy cashuA token")] = False,
    qr: Annotated[bool, typer.Option("--qr/--no-qr", help="Show token QR code")] = False,
) -> None:
    """Create a Cashu token."""

    async def _send(wallet: Wallet) -> None:
        token = await wallet.send_token(
            amount, memo=memo, mint_url=mint_url, version=3 if v3 else 4
        )
        console.print(f"\n[bold]Cashu token:[/bold]\n{token}\n")
        if qr:
            display_qr_code(token, "Cashu token")
        console.print(f"Remaining balance: {wallet.balance()} sats")

    run(_send)


@app.command()
def receive(
    token: Annotated[str, typer.Argument(help="cashuA/cashuB token")],
    trust: Annotated[
        bool, typer.Option("--trust", help="Add the token's mint if it is new")
    ] = False,
) -> None:
    """Redeem a Cashu token into the wallet."""

    async def _receive(wallet: Wallet) -> None:
        amount = await wallet.receive_token(token, trust_mint=trust)
        console.print(f"[green]✅ Received {amount} sats[/green]")
        console.print(f"Balance: {wallet.balance()} sats")

    run(_receive)


@app.command()
def zap(
    recipient: Annotated[str, typer.Argument(help="Recipient pubkey (hex)")],
    amount: Annotated[int, typer.Argument(help="Amount in sats")],
    ref: Annotated[Optional[str], typer.Option(help="Event id being zapped")] = None,
    comment: Annotated[str, typer.Option(help="Comment")] = "",
) -> None:
    """Send a nutzap."""

    async def _zap(wallet: Wallet) -> None:
        nutzap = await wallet.send_nutzap(recipient, amount, ref=ref, comment=comment)
        console.print(
            f"[green]⚡ Nutzapped {nutzap.amount} sats via {nutzap.mint_url}[/green]"
        )
        console.print(f"[dim]Event: {nutzap.event_id}[/dim]")

    run(_zap)


@app.command("claim-zaps")
def claim_zaps() -> None:
    """Redeem nutzaps addressed to this wallet."""

    async def _claim(wallet: Wallet) -> None:
        total = await wallet.claim_nutzaps()
        if total:
            console.print(f"[green]✅ Claimed {total} sats from nutzaps[/green]")
        else:
            console.print("[dim]No new nutzaps[/dim]")

    run(_claim)


@app.command("publish-info")
def publish_info(
    relays: Annotated[
        Optional[list[str]], typer.Option("--relay", "-r", help="Relays to advertise")
    ] = None,
) -> None:
    """Announce the mints and P2PK key this wallet accepts nutzaps with."""

    async def _publish(wallet: Wallet) -> None:
        await wallet.publish_nutzap_info(relays)
        console.print("[green]✅ Nutzap info published[/green]")

    run(_publish)


@app.command()
def history(
    limit: Annotated[int, typer.Option("--limit", "-n", help="Entries to show")] = 20,
    kind: Annotated[
        Optional[str],
        typer.Option(help="Only mint, melt, send, receive or nutzap entries"),
    ] = None,
) -> None:
    """Show recent wallet transactions."""
    if kind is not None and kind not in HISTORY_KINDS:
        console.print(f"[red]❌ Unknown kind {kind!r}[/red]")
        raise typer.Exit(1)

    async def _history(wallet: Wallet) -> None:
        entries = wallet.history(limit=limit, kind=kind)  # type: ignore[arg-type]
        if not entries:
            console.print("[yellow]No transactions yet[/yellow]")
            return
        table = Table(show_header=True, header_style="bold cyan")
        table.add_column("Date", style="dim")
        table.add_column("Type")
        table.add_column("Direction", justify="center")
        table.add_column("Amount", justify="right", style="green")
        table.add_column("Fee", justify="right", style="dim")
        table.add_column("Mint", style="cyan")
        for entry in entries:
            table.add_row(
                datetime.fromtimestamp(entry.timestamp).strftime("%Y-%m-%d %H:%M"),
                entry.kind,
                "📥 in" if entry.direction == "in" else "📤 out",
                f"{entry.amount} {entry.unit}",
                str(entry.fee) if entry.fee else "",
                entry.mint_url,
            )
        console.print(table)

    run(_history)


@app.command()
def recover() -> None:
    """Settle operations interrupted by a crash or network failure."""

    async def _recover(wallet: Wallet) -> None:
        report = await wallet.recover_pending()
        console.print(
            f"Recovered: {report.recovered_count}  "
            f"Failed: {report.failed_count}  Pending: {report.pending_count}"
        )
        _print_balance(wallet)

    run(_recover)


@app.command()
def backup(
    restore: Annotated[
        bool, typer.Option("--restore", help="Merge the latest backup into this wallet")
    ] = False,
) -> None:
    """Publish an encrypted wallet backup, or restore from one."""

    async def _backup(wallet: Wallet) -> None:
        if restore:
            if await wallet.restore_backup():
                removed = await wallet.refresh()
                console.print(
                    f"[green]✅ Backup restored ({len(removed)} spent proofs dropped)[/green]"
                )
                _print_balance(wallet)
            else:
                console.print("[yellow]No backup found[/yellow]")
            return
        event_id = await wallet.backup()
        console.print(f"[green]✅ Backup published[/green] [dim]{event_id}[/dim]")

    run(_backup)


def version_callback(value: bool) -> None:
    if value:
        console.print(f"nutjar v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    nsec: Annotated[
        Optional[str], typer.Option("--nsec", help="Nostr key (nsec or hex); defaults to NSEC")
    ] = None,
    data_dir: Annotated[
        Optional[Path], typer.Option("--data-dir", help="Wallet directory; defaults to NUTJAR_HOME")
    ] = None,
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Debug logging")] = False,
    version: Annotated[
        Optional[bool],
        typer.Option("--version", callback=version_callback, help="Show version"),
    ] = None,
) -> None:
    """nutjar - multi-mint Cashu wallet CLI.

    Configuration is read from the environment and a `.env` file:
    CASHU_MINTS, NOSTR_RELAYS, NSEC, NUTJAR_HOME, MINT_TIMEOUT, MINT_RETRIES.
    """
    load_dotenv()
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    _state["nsec"] = nsec
    _state["data_dir"] = data_dir


def cli() -> None:
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    cli()
