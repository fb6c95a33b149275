"""
Main CLI application using Typer.
"""

import asyncio
import logging
from pathlib import Path
from typing import Annotated, List, Optional, Tuple

import pendulum
import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from ..config import AppConfig, get_default_config_path
from ..adapters.json_store import JsonFileStore
from ..domain.exceptions import BookingError, ConflictError
from ..domain.lifecycle import AppointmentLifecycle
from ..domain.models import WEEKDAY_NAMES, Appointment
from ..services.booking_service import BookingService

app = typer.Typer(
    name="slotbooker",
    help="Find free slots and manage appointments for establishments",
    add_completion=False
)

console = Console()

ConfigOption = Annotated[
    Optional[Path],
    typer.Option("--config", "-c", help="Path to config file. Defaults to ./config.yaml"),
]
VerboseOption = Annotated[bool, typer.Option("--verbose", "-v", help="Enable debug logging")]


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


def _load(config_file: Optional[Path], verbose: bool) -> Tuple[AppConfig, BookingService]:
    """Load configuration and build the booking service on top of the JSON store."""
    _setup_logging(verbose)
    config_path = config_file or get_default_config_path()
    config = AppConfig.load_from_yaml(config_path)

    store = JsonFileStore(config.data_file, default_timezone=config.timezone)
    service = BookingService(
        catalog=store,
        store=store,
        lifecycle=AppointmentLifecycle(config.cancellation.to_policy()),
        past_grace_minutes=config.booking.past_grace_minutes,
        max_attempts=config.booking.max_attempts,
        retry_delay_seconds=config.booking.retry_delay_seconds,
    )
    return config, service


def _parse_date(value: Optional[str], tz: str) -> pendulum.Date:
    if not value:
        return pendulum.today(tz).date()
    try:
        return pendulum.from_format(value, "YYYY-MM-DD", tz=tz).date()
    except ValueError as e:
        console.print(f"[red]Could not parse date '{value}': {e}[/red]")
        raise typer.Exit(1)


def _appointment_table(title: str, appointments: List[Appointment]) -> Table:
    table = Table(title=title, show_header=True, header_style="bold cyan")
    table.add_column("ID", style="bold yellow")
    table.add_column("Date")
    table.add_column("Time")
    table.add_column("Service")
    table.add_column("Staff", style="dim")
    table.add_column("Client", style="dim")
    table.add_column("Status")

    for appointment in appointments:
        table.add_row(
            str(appointment.id),
            appointment.start_time.format("YYYY-MM-DD"),
            f"{appointment.start_time.format('HH:mm')} - {appointment.end_time.format('HH:mm')}",
            str(appointment.service_id),
            "-" if appointment.resource_id is None else str(appointment.resource_id),
            appointment.client_id,
            appointment.status.value,
        )
    return table


def _fail(error: Exception) -> None:
    if isinstance(error, ConflictError):
        console.print(
            "[yellow]⚠ Slot no longer available.[/yellow] "
            "Request the available slots again and pick another time."
        )
    else:
        console.print(f"[bold red]Error:[/bold red] {error}")
    raise typer.Exit(1)


@app.command()
def slots(
    establishment_id: Annotated[int, typer.Argument(help="Establishment ID")],
    service_id: Annotated[int, typer.Argument(help="Service ID")],
    date: Annotated[Optional[str], typer.Option("--date", "-d", help="Date (YYYY-MM-DD), defaults to today")] = None,
    staff: Annotated[Optional[int], typer.Option("--staff", help="Staff member ID")] = None,
    config_file: ConfigOption = None,
    verbose: VerboseOption = False,
):
    """
    List bookable start times for a service on a date.

    Examples:

        slotbooker slots 1 10 --date 2024-11-25
        slotbooker slots 1 10 --date 2024-11-25 --staff 7
    """
    try:
        config, service = _load(config_file, verbose)
        day = _parse_date(date, config.timezone)
        available = asyncio.run(
            service.get_available_slots(establishment_id, service_id, day, resource_id=staff)
        )
    except (BookingError, FileNotFoundError, ValueError) as e:
        _fail(e)

    console.print()
    if not available:
        console.print(f"[yellow]⚠ No free slots on {day.format('YYYY-MM-DD')}.[/yellow]")
    else:
        console.print(f"[bold green]✓ {len(available)} free slot(s):[/bold green]\n")
        for slot in available:
            console.print(f"  {slot.format_display()}")
    console.print()


@app.command()
def book(
    establishment_id: Annotated[int, typer.Argument(help="Establishment ID")],
    service_id: Annotated[int, typer.Argument(help="Service ID")],
    client: Annotated[str, typer.Option("--client", help="Client ID")],
    start: Annotated[str, typer.Option("--start", help="Start time (YYYY-MM-DD HH:mm)")],
    staff: Annotated[Optional[int], typer.Option("--staff", help="Staff member ID")] = None,
    config_file: ConfigOption = None,
    verbose: VerboseOption = False,
):
    """
    Reserve a service at a start time.
    """
    try:
        config, service = _load(config_file, verbose)
        try:
            start_time = pendulum.from_format(start, "YYYY-MM-DD HH:mm", tz=config.timezone)
        except ValueError as e:
            console.print(f"[red]Could not parse start time '{start}': {e}[/red]")
            raise typer.Exit(1)

        appointment = asyncio.run(
            service.reserve(establishment_id, service_id, client, start_time, resource_id=staff)
        )
    except (BookingError, FileNotFoundError, ValueError) as e:
        _fail(e)

    console.print(
        f"\n[bold green]✓ Appointment {appointment.id} confirmed:[/bold green] "
        f"{appointment.start_time.format('YYYY-MM-DD HH:mm')} - {appointment.end_time.format('HH:mm')}\n"
    )


@app.command()
def cancel(
    appointment_id: Annotated[int, typer.Argument(help="Appointment ID")],
    actor: Annotated[str, typer.Option("--actor", help="ID of the client or establishment owner")],
    config_file: ConfigOption = None,
    verbose: VerboseOption = False,
):
    """
    Cancel a confirmed appointment.
    """
    try:
        _, service = _load(config_file, verbose)
        appointment = asyncio.run(service.cancel(appointment_id, actor))
    except (BookingError, FileNotFoundError, ValueError) as e:
        _fail(e)

    console.print(f"\n[green]✓ Appointment {appointment.id} cancelled.[/green]\n")


@app.command()
def appointments(
    client: Annotated[str, typer.Option("--client", help="Client ID")],
    config_file: ConfigOption = None,
    verbose: VerboseOption = False,
):
    """
    Show a client's upcoming appointments and history.
    """
    try:
        _, service = _load(config_file, verbose)
        agenda = asyncio.run(service.client_appointments(client))
    except (BookingError, FileNotFoundError, ValueError) as e:
        _fail(e)

    console.print()
    if not agenda.upcoming and not agenda.history:
        console.print("[yellow]No appointments found.[/yellow]\n")
        return
    if agenda.upcoming:
        console.print(_appointment_table("Upcoming", agenda.upcoming))
    if agenda.history:
        console.print(_appointment_table("History", agenda.history))
    console.print()


@app.command()
def agenda(
    establishment_id: Annotated[int, typer.Argument(help="Establishment ID")],
    date: Annotated[Optional[str], typer.Option("--date", "-d", help="Date (YYYY-MM-DD), defaults to today")] = None,
    config_file: ConfigOption = None,
    verbose: VerboseOption = False,
):
    """
    Show all appointments of an establishment on a date.
    """
    try:
        config, service = _load(config_file, verbose)
        day = _parse_date(date, config.timezone)
        entries = asyncio.run(service.establishment_agenda(establishment_id, day))
    except (BookingError, FileNotFoundError, ValueError) as e:
        _fail(e)

    console.print()
    if not entries:
        console.print(f"[yellow]No appointments on {day.format('YYYY-MM-DD')}.[/yellow]\n")
        return
    console.print(_appointment_table(f"Agenda {day.format('YYYY-MM-DD')}", entries))
    console.print()


@app.command()
def services(
    establishment_id: Annotated[int, typer.Argument(help="Establishment ID")],
    config_file: ConfigOption = None,
    verbose: VerboseOption = False,
):
    """
    List the services and weekly opening hours of an establishment.
    """
    try:
        _, service = _load(config_file, verbose)
        catalog = asyncio.run(service.list_services(establishment_id))
        rules = asyncio.run(service.weekly_schedule(establishment_id))
    except (BookingError, FileNotFoundError, ValueError) as e:
        _fail(e)

    table = Table(title="Services", show_header=True, header_style="bold cyan")
    table.add_column("ID", style="bold yellow")
    table.add_column("Name")
    table.add_column("Duration")
    table.add_column("Price", justify="right")
    for item in catalog:
        table.add_row(
            str(item.id),
            item.name,
            f"{item.duration_minutes} min",
            f"{item.price_minor_units / 100:.2f}",
        )

    console.print()
    console.print(table)
    console.print(f"\n[bold]Opening hours[/bold] ({rules.timezone})")
    for day, windows in rules.weekly_schedule().items():
        hours = ", ".join(
            f"{w.start_time.strftime('%H:%M')}-{w.end_time.strftime('%H:%M')}" for w in windows
        ) or "[dim]closed[/dim]"
        console.print(f"  {WEEKDAY_NAMES[day]:<10} {hours}")
    console.print()


@app.command()
def version():
    """
    Show version information.
    """
    from .. import __version__
    console.print(f"\n[bold cyan]slotbooker[/bold cyan] version [bold]{__version__}[/bold]\n")


if __name__ == "__main__":
    app()
