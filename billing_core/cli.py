"""CLI for the billing core.

Provides operator commands for SMS unit estimates, bill assignment display,
balance checks and mobile-money payments.
"""

import asyncio
import json
import signal
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from billing_core.billing.assignment import assignment_text
from billing_core.config import get_settings
from billing_core.core.flows import (
    NoOutstandingBalanceError,
    PaymentBlockedError,
    SchoolBillPayment,
    event_registration_orchestrator,
)
from billing_core.core.orchestrator import PaymentError, PaymentOrchestrator
from billing_core.domain.models import FeeTargeting, Lookups, PaymentState, ProgressEvent
from billing_core.integrations.gateway_client import GatewayError, PaymentGatewayClient
from billing_core.messaging.segments import analyse
from billing_core.monitoring.logging import setup_logging

app = typer.Typer(
    name="billing-core",
    help="Billing core - payments, bill assignments and SMS units",
    add_completion=False,
)

console = Console()

STATE_STYLES = {
    PaymentState.CREATED: "blue",
    PaymentState.AWAITING_APPROVAL: "yellow",
    PaymentState.SUCCEEDED: "green",
    PaymentState.FAILED: "red",
    PaymentState.TIMED_OUT: "magenta",
    PaymentState.CANCELLED: "dim",
}


def _configure(verbose: bool) -> None:
    settings = get_settings()
    if verbose:
        settings = settings.model_copy(update={"log_level": "DEBUG"})
    setup_logging(settings)


def _print_event(event: ProgressEvent) -> None:
    style = STATE_STYLES.get(event.state, "white")
    remaining = (
        f" [dim]({event.seconds_remaining}s left)[/dim]"
        if event.state is PaymentState.AWAITING_APPROVAL
        else ""
    )
    console.print(f"[{style}]{event.state.value}[/{style}] {event.message}{remaining}")


def _countdown_text(seconds: int) -> str:
    return f"Waiting for approval on the phone... [bold]{seconds}s[/bold] left (Ctrl-C to cancel)"


async def _drive(orchestrator: PaymentOrchestrator, events) -> Optional[PaymentState]:
    """Print progress until a terminal event with a live countdown; Ctrl-C cancels."""
    loop = asyncio.get_running_loop()
    loop.add_signal_handler(signal.SIGINT, orchestrator.cancel)
    with console.status(_countdown_text(orchestrator.seconds_remaining)) as status_line:
        unsubscribe = orchestrator.on_countdown(
            lambda seconds: status_line.update(_countdown_text(seconds))
        )
        try:
            async for event in events:
                _print_event(event)
        finally:
            unsubscribe()
            loop.remove_signal_handler(signal.SIGINT)
            await orchestrator.aclose()
    return orchestrator.state


def _exit_for(state: Optional[PaymentState]) -> None:
    if state is PaymentState.SUCCEEDED:
        console.print("\n[green]Payment confirmed.[/green]")
        return
    if state is PaymentState.TIMED_OUT:
        console.print(
            "\n[yellow]No confirmation yet.[/yellow] Check the payment status later "
            "before trying again."
        )
    raise typer.Exit(1)


@app.command("sms-units")
def sms_units(
    text: str = typer.Argument(..., help="Message text"),
    recipients: int = typer.Option(
        1,
        "--recipients",
        "-r",
        min=1,
        help="Number of recipients",
    ),
) -> None:
    """Show the encoding and SMS units a message consumes."""
    analysis = analyse(text)

    table = Table(title="SMS units")
    table.add_column("Encoding")
    table.add_column("Length", justify="right")
    table.add_column("Units / message", justify="right")
    table.add_column("Total units", justify="right")
    table.add_row(
        analysis.encoding.value,
        str(analysis.length),
        str(analysis.units),
        str(analysis.units * recipients),
    )
    console.print(table)


@app.command()
def assignments(
    path: Path = typer.Argument(
        ...,
        exists=True,
        dir_okay=False,
        help="JSON file with 'items' and optional 'schools', 'groups', 'zones', 'regions'",
    ),
) -> None:
    """Show who each bill item is billed to."""
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        console.print(f"[red]Error:[/red] Invalid JSON in {path}: {e}")
        raise typer.Exit(1)

    lookups = Lookups.from_records(
        schools=data.get("schools"),
        groups=data.get("groups"),
        zones=data.get("zones"),
        regions=data.get("regions"),
    )

    table = Table(title="Bill item assignments", show_lines=True)
    table.add_column("Item", justify="right")
    table.add_column("Amount", justify="right")
    table.add_column("Assigned to")
    for item in data.get("items", []):
        table.add_row(
            str(item.get("id", "")),
            str(item.get("amount", "")),
            assignment_text(FeeTargeting.from_bill_item(item), lookups),
        )
    console.print(table)


@app.command()
def balance(
    school_id: int = typer.Argument(..., help="School id"),
    bill_id: Optional[int] = typer.Option(None, "--bill-id", "-b", help="Bill id"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose output"),
) -> None:
    """Show a school's outstanding balance."""
    _configure(verbose)

    async def _fetch():
        async with PaymentGatewayClient() as gateway:
            return await gateway.get_school_balance(school_id, bill_id)

    try:
        result = asyncio.run(_fetch())
    except GatewayError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)

    if result.blocked:
        console.print(
            Panel(result.message or "Not enrolled for billing", title="Blocked", border_style="red")
        )
        raise typer.Exit(1)

    title = result.bill_name or (f"Bill {bill_id}" if bill_id else "Balance")
    style = "yellow" if result.has_balance else "green"
    console.print(Panel(f"Outstanding: {result.amount}", title=title, border_style=style))


@app.command("pay-bill")
def pay_bill(
    school_id: int = typer.Argument(..., help="School id"),
    school_bill_id: int = typer.Argument(..., help="School bill id"),
    amount: str = typer.Argument(..., help="Amount to pay"),
    phone: str = typer.Argument(..., help="Mobile money number"),
    network: str = typer.Argument(..., help="MTN, TELECEL or AIRTELTIGO"),
    note: Optional[str] = typer.Option(None, "--note", "-n", help="Payment note"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose output"),
) -> None:
    """Pay towards a school bill by mobile money."""
    _configure(verbose)

    async def _pay() -> Optional[PaymentState]:
        async with PaymentGatewayClient() as gateway:
            flow = SchoolBillPayment(
                gateway, school_id, school_bill_id, payment_note=note
            )
            return await _drive(flow.orchestrator, flow.run(amount, phone, network))

    try:
        state = asyncio.run(_pay())
    except (PaymentBlockedError, NoOutstandingBalanceError) as e:
        console.print(f"[yellow]{e}[/yellow]")
        raise typer.Exit(1)
    except (PaymentError, GatewayError) as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)

    _exit_for(state)


@app.command("pay-event")
def pay_event(
    registration_code: str = typer.Argument(..., help="Event registration code"),
    school_id: int = typer.Argument(..., help="Registering school id"),
    amount: str = typer.Argument(..., help="Registration fee"),
    phone: str = typer.Argument(..., help="Mobile money number"),
    network: str = typer.Argument(..., help="MTN, TELECEL or AIRTELTIGO"),
    attendees: int = typer.Option(1, "--attendees", "-a", min=1, help="Number of attendees"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose output"),
) -> None:
    """Pay an event registration fee by mobile money."""
    _configure(verbose)

    async def _pay() -> Optional[PaymentState]:
        async with PaymentGatewayClient() as gateway:
            orchestrator = event_registration_orchestrator(
                gateway, registration_code, school_id, number_of_attendees=attendees
            )
            return await _drive(orchestrator, orchestrator.run(amount, phone, network))

    try:
        state = asyncio.run(_pay())
    except (PaymentError, GatewayError) as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)

    _exit_for(state)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show version and exit",
    ),
) -> None:
    """Billing core - payments, bill assignments and SMS units."""
    if version:
        from billing_core import __version__
        console.print(f"billing-core v{__version__}")
        raise typer.Exit()
    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit()


if __name__ == "__main__":
    app()
