"""
Command-line interface for the weather station hub.
Runs the hub and inspects its store using click and rich.
"""

import asyncio
import json
from datetime import datetime
from typing import Optional

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .. import __version__
from ..ble.address import SensorAddress
from ..ble.codec import Reading
from ..metadata.registry import SensorRegistry
from ..metadata.schema import ConnectionState
from ..service.daemon import HubDaemon, HubDaemonError
from ..storage.store import StoreError, TimeSeriesStore
from ..utils.config import Config, ConfigurationError
from ..utils.logging import ProductionLogger, PerformanceMonitor


STATE_STYLES = {
    ConnectionState.DISCOVERED: "[yellow]discovered[/yellow]",
    ConnectionState.CONNECTED: "[green]connected[/green]",
    ConnectionState.DISCONNECTED: "[red]disconnected[/red]",
    ConnectionState.FORGOTTEN: "[dim]forgotten[/dim]",
}


class CLIError(Exception):
    """Base exception for CLI operations."""
    pass


def format_time(timestamp: int) -> str:
    return datetime.fromtimestamp(timestamp).strftime("%Y-%m-%d %H:%M:%S")


def format_fixed(value: Optional[int], unit: str) -> str:
    """Render a x100 fixed-point value, or a dash when absent."""
    if value is None:
        return "-"
    sign = "-" if value < 0 else ""
    value = abs(value)
    return f"{sign}{value // 100}.{value % 100:02d}{unit}"


class HubCLI:
    """
    Offline inspection of the hub store.

    Reads go straight to the database file, so they work whether or not the
    hub is running.
    """

    def __init__(self, config: Optional[Config] = None, console: Optional[Console] = None):
        self.console = console or Console()
        self.config = config
        self.logger: Optional[ProductionLogger] = None
        self.store: Optional[TimeSeriesStore] = None
        self.registry: Optional[SensorRegistry] = None

    def _initialize_components(self):
        """
        Open the store and load the registry.

        Raises:
            CLIError: If configuration or store are unusable
        """
        try:
            if self.config is None:
                self.config = Config()
            self.logger = ProductionLogger(
                log_level="WARNING",
                log_dir=str(self.config.log_dir),
                enable_console=False,
                enable_file=False,
            )
            self.store = TimeSeriesStore(self.config, self.logger.get_logger('weatherhub.store'), PerformanceMonitor())
            self.store.open()
            self.registry = SensorRegistry(self.store, self.logger.get_logger('weatherhub.registry'))
            self.registry.load()
        except (ConfigurationError, StoreError) as e:
            raise CLIError(str(e))

    def close(self):
        if self.store is not None:
            self.store.close()

    def _print_header(self):
        """Print application header."""
        header = Panel.fit(
            "[bold blue]Weather Station Hub[/bold blue]\n"
            "[dim]BLE weather sensor collection and distribution[/dim]",
            border_style="blue"
        )
        self.console.print(header)
        self.console.print()

    def print_sensor_list(self):
        """Print list of known sensors."""
        sensors = self.registry.list()
        if not sensors:
            self.console.print("[yellow]No sensors known[/yellow]")
            return

        table = Table(title="Known Sensors", show_header=True, header_style="bold magenta")
        table.add_column("Address", style="cyan")
        table.add_column("Label", style="green")
        table.add_column("State")
        table.add_column("First Seen", style="dim")
        table.add_column("Last Seen", style="dim")
        table.add_column("Readings", justify="right")

        for record in sensors:
            table.add_row(
                str(record.address),
                record.label,
                STATE_STYLES.get(record.connection_state, record.connection_state.value),
                format_time(record.first_seen),
                format_time(record.last_seen),
                str(self.store.count_readings(record.address)),
            )

        self.console.print(table)

    def print_log(self, address: SensorAddress, start: Optional[int], end: Optional[int], as_json: bool = False):
        """Print the stored readings of a sensor."""
        readings = self.store.range_query(address, start, end)

        if as_json:
            entries = [self._log_entry(reading) for reading in readings]
            click.echo(json.dumps(entries))
            return

        table = Table(title=f"Readings of {address}", show_header=True, header_style="bold magenta")
        table.add_column("Time", style="dim")
        table.add_column("Temperature", justify="right")
        table.add_column("Humidity", justify="right")
        table.add_column("Pressure", justify="right")

        count = 0
        for reading in readings:
            table.add_row(
                format_time(reading.timestamp),
                format_fixed(reading.temperature, " °C"),
                format_fixed(reading.humidity, " %"),
                format_fixed(reading.pressure, " hPa"),
            )
            count += 1

        if count:
            self.console.print(table)
        else:
            self.console.print(f"[yellow]No readings stored for {address}[/yellow]")

    @staticmethod
    def _log_entry(reading: Reading) -> dict:
        return {
            'timestamp': reading.timestamp,
            'temperature': reading.temperature,
            'humidity': reading.humidity,
            'pressure': reading.pressure,
        }

    def print_configuration(self):
        """Print configuration summary and validation result."""
        try:
            self.config.validate_configuration()
            self.console.print("[green]Configuration valid[/green]")
        except ConfigurationError as e:
            self.console.print(f"[red]{e}[/red]")

        summary = self.config.get_summary()
        table = Table(title="Configuration", show_header=True, header_style="bold magenta")
        table.add_column("Section", style="cyan")
        table.add_column("Setting", style="green")
        table.add_column("Value")
        for section, values in summary.items():
            for key, value in values.items():
                table.add_row(section, key, str(value))
        self.console.print(table)


def _parse_address(value: str) -> SensorAddress:
    try:
        return SensorAddress.parse(value)
    except ValueError as e:
        raise click.BadParameter(str(e))


@click.group()
@click.version_option(version=__version__, prog_name="weatherhub")
def cli():
    """Weather station hub - BLE weather sensor collection and distribution."""
    pass


@cli.command()
def run():
    """Run the hub until interrupted."""
    try:
        asyncio.run(HubDaemon().start())
    except HubDaemonError as e:
        raise click.ClickException(str(e))


@cli.command()
def sensors():
    """List known sensors."""
    app = HubCLI()
    try:
        app._initialize_components()
        app.print_sensor_list()
    except CLIError as e:
        raise click.ClickException(str(e))
    finally:
        app.close()


@cli.command()
@click.argument("address")
@click.option("--start", type=int, default=None, help="First unix timestamp to include")
@click.option("--end", type=int, default=None, help="Last unix timestamp to include")
@click.option("--json", "as_json", is_flag=True, help="Print readings as JSON")
def log(address, start, end, as_json):
    """Show stored readings of a sensor."""
    sensor_address = _parse_address(address)
    app = HubCLI()
    try:
        app._initialize_components()
        app.print_log(sensor_address, start, end, as_json)
    except (CLIError, StoreError) as e:
        raise click.ClickException(str(e))
    finally:
        app.close()


@cli.command()
def config():
    """Validate and show configuration."""
    try:
        app = HubCLI(Config())
    except ConfigurationError as e:
        raise click.ClickException(str(e))
    app._print_header()
    app.print_configuration()


if __name__ == "__main__":
    cli()
