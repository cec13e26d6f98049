"""
Hockey Training Booking Engine - Operator CLI
Terminal interface over the booking API.
"""

import asyncio
import os
from datetime import date

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.prompt import Prompt, IntPrompt, Confirm
from rich import box

from api_client import BookingAPIClient

console = Console()


def print_header():
    """Print application header."""
    console.print()
    console.print(Panel.fit(
        "[bold blue]Hockey Training Booking Engine[/bold blue]\n"
        "[dim]Credits, bookings and saga operations[/dim]",
        border_style="blue",
        padding=(1, 4)
    ))
    console.print()


def print_failure(result: dict, title: str = "REQUEST FAILED"):
    console.print(Panel(
        f"[bold red]{title}[/bold red]\n\n"
        f"[bold]Reason:[/bold] {result.get('error_message') or result.get('detail', 'Unknown error')}\n"
        f"[dim]Code: {result.get('error_code', 'n/a')}[/dim]",
        border_style="red",
        padding=(1, 2)
    ))


def print_balance(summary: dict):
    """Print balance summary with lots."""
    sync = "[green]in sync[/green]" if summary.get("in_sync") else "[red]out of sync[/red]"
    console.print(Panel(
        f"[bold]Owner:[/bold] {summary['owner_id']}\n"
        f"[bold]Credits:[/bold] {summary['total_credits']} ({sync} with lots: {summary['lot_balance']})\n"
        f"[bold]Expiring soon:[/bold] {summary['expiring_soon']}\n"
        f"[bold]Next expiry:[/bold] {summary.get('next_expiry_date') or '-'}",
        border_style="cyan"
    ))

    lots = summary.get("lots", [])
    if not lots:
        return
    table = Table(title="[bold]Active Lots[/bold]", box=box.ROUNDED, border_style="cyan")
    table.add_column("Lot", style="cyan")
    table.add_column("Package")
    table.add_column("Remaining", justify="right", style="green")
    table.add_column("Expires")
    for lot in lots:
        table.add_row(
            lot["id"],
            lot.get("package_type") or "admin grant",
            f"{lot['credits_remaining']}/{lot['credits_purchased']}",
            lot["expires_at"][:10]
        )
    console.print(table)


def print_saga_events(intent: dict):
    """Print the saga event trail."""
    console.print("[bold]Saga Events:[/bold]")
    for event in intent.get("events", []):
        event_type = event.get("type", "")
        message = event.get("message", "")

        if "failed" in event_type or "full" in event_type or "insufficient" in event_type:
            console.print(f"  [red]x[/red] {message}")
        elif "compensation" in event_type:
            console.print(f"  [yellow]<[/yellow] {message}")
        elif "created" in event_type or "debited" in event_type:
            console.print(f"  [green]+[/green] {message}")
        else:
            console.print(f"  [blue]>[/blue] {message}")


async def run_booking_flow(client: BookingAPIClient):
    """Book one credit-funded group session."""
    console.print("[bold]Book a Session[/bold]")
    console.print("-" * 40)

    owner_id = Prompt.ask("[cyan]Owner id[/cyan]")
    registration_id = Prompt.ask("[cyan]Registration id[/cyan]")

    while True:
        date_str = Prompt.ask("[cyan]Session date (YYYY-MM-DD)[/cyan]")
        try:
            session_date = date.fromisoformat(date_str)
            break
        except ValueError:
            console.print("[red]Invalid date format. Use YYYY-MM-DD[/red]")

    time_slot = Prompt.ask("[cyan]Time slot[/cyan]", default="5:45 PM")

    if not Confirm.ask("[cyan]Spend 1 credit on this booking?[/cyan]"):
        console.print("[yellow]Booking cancelled[/yellow]")
        return

    with console.status("[bold green]Running booking saga..."):
        result = await client.create_booking(owner_id, registration_id, "group", session_date, time_slot)

    if result.get("request_id"):
        console.print(f"[dim]Request ID: {result['request_id']}[/dim]")
        print_saga_events(await client.get_saga(result["request_id"]))
        console.print()

    if result.get("success"):
        console.print(Panel(
            f"[bold green]BOOKING CONFIRMED[/bold green]\n\n"
            f"[bold]Booking:[/bold] {result['booking_id']}\n"
            f"[bold]Date:[/bold] {result['booking_date']}\n"
            f"[bold]Credits left:[/bold] {result.get('credits_remaining')}",
            border_style="green",
            padding=(1, 2)
        ))
    else:
        print_failure(result, "BOOKING FAILED")
        if result.get("retryable"):
            console.print("[yellow]The credit was refunded; the booking can be retried.[/yellow]")


async def run_cancel_flow(client: BookingAPIClient):
    owner_id = Prompt.ask("[cyan]Owner id[/cyan]")
    bookings = [b for b in await client.list_bookings(owner_id) if b["status"] == "confirmed"]
    if not bookings:
        console.print("[yellow]No confirmed bookings[/yellow]")
        return

    table = Table(box=box.ROUNDED, border_style="cyan")
    table.add_column("#", style="dim", width=4)
    table.add_column("Booking", style="cyan")
    table.add_column("Date")
    table.add_column("Time")
    for i, booking in enumerate(bookings, 1):
        table.add_row(str(i), booking["id"], booking["session_date"], booking["time_slot"])
    console.print(table)

    index = IntPrompt.ask("[cyan]Cancel which booking[/cyan]", default=1)
    if not 1 <= index <= len(bookings):
        console.print("[red]Invalid selection[/red]")
        return

    result = await client.cancel_booking(bookings[index - 1]["id"], owner_id)
    if result.get("success"):
        console.print(f"[green]{result['message']}[/green]")
    else:
        print_failure(result, "CANCELLATION FAILED")


async def run_compensation_demo(client: BookingAPIClient):
    """Force a booking failure and show the credit coming back."""
    console.print(Panel(
        "[bold red]Booking Failure + Compensation[/bold red]\n\n"
        "- Booking creation is forced to fail after the credit debit\n"
        "- Expected: credit refunded, balance unchanged",
        border_style="red"
    ))
    owner_id = Prompt.ask("[cyan]Owner id[/cyan]")
    before = (await client.get_balance(owner_id))["total_credits"]

    await client.toggle_failure_simulation(True)
    try:
        await run_booking_flow(client)
    finally:
        await client.toggle_failure_simulation(False)

    after = (await client.get_balance(owner_id))["total_credits"]
    console.print(f"[dim]Balance before: {before}, after: {after}[/dim]")


async def main_menu(client: BookingAPIClient):
    """Main menu loop."""
    while True:
        print_header()

        console.print("[bold]Main Menu[/bold]")
        console.print("-" * 40)
        console.print("1. [cyan]Credit Balance[/cyan]")
        console.print("2. [cyan]Book a Session[/cyan]")
        console.print("3. [cyan]Cancel a Booking[/cyan]")
        console.print("4. [green]Fulfill Credit Purchase[/green]")
        console.print("5. [yellow]Adjust Credits (admin)[/yellow]")
        console.print("6. [yellow]Reconcile Balance[/yellow]")
        console.print("7. [yellow]Run Recurring Bookings[/yellow]")
        console.print("8. [yellow]Reconcile Stale Sagas[/yellow]")
        console.print("9. [red]Compensation Demo[/red]")
        console.print("0. [dim]Exit[/dim]")
        console.print()

        choice = Prompt.ask(
            "[cyan]Select option[/cyan]",
            choices=[str(i) for i in range(10)],
            default="1"
        )

        if choice == "0":
            console.print("[dim]Goodbye![/dim]")
            break
        elif choice == "1":
            print_balance(await client.get_balance(Prompt.ask("[cyan]Owner id[/cyan]")))
        elif choice == "2":
            await run_booking_flow(client)
        elif choice == "3":
            await run_cancel_flow(client)
        elif choice == "4":
            result = await client.fulfill_purchase(Prompt.ask("[cyan]Checkout session id[/cyan]"))
            if result.get("success"):
                note = " (already processed)" if result.get("already_processed") else ""
                console.print(
                    f"[green]{result['credits_added']} credit(s) added{note}. "
                    f"Balance: {result.get('new_balance')}[/green]"
                )
            else:
                print_failure(result, "FULFILLMENT FAILED")
        elif choice == "5":
            result = await client.adjust_credits(
                Prompt.ask("[cyan]Owner id[/cyan]"),
                IntPrompt.ask("[cyan]Adjustment (+/-)[/cyan]"),
                Prompt.ask("[cyan]Reason[/cyan]"),
                Prompt.ask("[cyan]Admin id[/cyan]", default="operator")
            )
            if result.get("success"):
                console.print(f"[green]{result['message']}[/green]")
            else:
                print_failure(result, "ADJUSTMENT FAILED")
        elif choice == "6":
            report = await client.reconcile_balance(Prompt.ask("[cyan]Owner id[/cyan]"))
            console.print(
                f"[green]Balance {report['balance_before']} -> {report['balance_after']} "
                f"({report['credits_expired']} expired)[/green]"
            )
        elif choice == "7":
            stats = await client.run_recurring()
            table = Table(title="[bold]Recurring Run[/bold]", box=box.ROUNDED, border_style="yellow")
            table.add_column("Outcome")
            table.add_column("Count", justify="right")
            for key, value in stats.items():
                table.add_row(key.replace("_", " "), str(value))
            console.print(table)
        elif choice == "8":
            report = await client.reconcile_sagas()
            console.print(
                f"[green]Examined {report['examined']}: refunded {report['refunded']}, "
                f"closed {report['closed']}, failed {report['failed']}[/green]"
            )
        elif choice == "9":
            await run_compensation_demo(client)

        console.print()
        Prompt.ask("[dim]Press Enter to continue...[/dim]", default="")


async def main():
    """Main entry point."""
    backend_url = os.getenv("BACKEND_URL", "http://localhost:8080")

    client = BookingAPIClient(backend_url, cron_secret=os.getenv("CRON_SECRET"))

    # Check health
    console.print("[dim]Connecting to backend...[/dim]")
    try:
        health = await client.health_check()
        if health.get("redis_connected"):
            console.print("[green]Connected to backend[/green]")
        else:
            console.print("[yellow]Backend connected but Redis unavailable[/yellow]")
    except Exception as e:
        console.print(f"[red]Failed to connect to backend: {e}[/red]")
        console.print(f"[dim]Make sure the backend is running at {backend_url}[/dim]")
        return

    await main_menu(client)


if __name__ == "__main__":
    asyncio.run(main())
