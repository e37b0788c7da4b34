import json
import logging
import typer
from typing import Any, Dict, List
from pydantic import BaseModel
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table
from redis_operator.utils.diagnostics import ReconcileDiagnostic

# Create a stderr console for logging
error_console = Console(stderr=True)


def configure_logging(level: str = "INFO") -> None:
    """
    Route every module logger through a rich handler on stderr.
    """
    handler = RichHandler(console=error_console, show_path=False, rich_tracebacks=True)
    logging.basicConfig(
        level=level.upper(),
        format="%(name)s: %(message)s",
        datefmt="[%X]",
        handlers=[handler],
        force=True,
    )


class OutputFormatter:
    """
    Handles output formatting for the CLI.
    Keeps operator messages (stderr) apart from data (stdout).
    """

    @staticmethod
    def log(message: str, severity: str = "info") -> None:
        """
        Print system messages to stderr with color coding.
        """
        style = "white"
        prefix = "[OPERATOR]"

        if severity == "warning":
            style = "yellow"
        elif severity == "error":
            style = "red"
        elif severity == "critical":
            style = "bold red"
        elif severity == "success":
            style = "green"

        error_console.print(f"[{style}]{prefix} {message}[/{style}]")

    @staticmethod
    def print_diagnostics(diagnostics: List[ReconcileDiagnostic]) -> None:
        """
        Prints a table of reconcile diagnostics.
        """
        if not diagnostics:
            return

        table = Table(title="Reconcile Diagnostics", border_style="red", header_style="bold red")
        table.add_column("Severity", style="bold")
        table.add_column("Code")
        table.add_column("Message")
        table.add_column("Location")

        for diag in diagnostics:
            color = "red"
            if diag.severity == "warning":
                color = "yellow"
            elif diag.severity == "critical":
                color = "bold red"
            elif diag.severity == "info":
                color = "cyan"

            loc = diag.instance
            if diag.node:
                loc += f"/{diag.node}"

            table.add_row(
                f"[{color}]{diag.severity.upper()}[/{color}]",
                diag.error_code,
                diag.message,
                loc
            )

        error_console.print(table)
        error_console.print() # spacing

    @staticmethod
    def print_blueprint(instance: str, state: str, blueprint: List[Dict[str, Any]], snapshot: Dict[str, Any] | None) -> None:
        """Render blueprint entries next to what the last snapshot observed."""
        table = Table(title=f"{instance} ({state})", header_style="bold")
        table.add_column("Node")
        table.add_column("Role")
        table.add_column("Parent")
        table.add_column("Health")
        table.add_column("Address")
        table.add_column("Slots", justify="right")

        nodes = (snapshot or {}).get("nodes", {})
        for entry in blueprint:
            observed = nodes.get(entry["name"], {})
            health = observed.get("health", entry.get("health", "Unknown"))
            color = "green" if health == "OK" else "red"
            slots = sum(end - start + 1 for start, end in observed.get("slots", []))
            table.add_row(
                entry["name"],
                entry["role"],
                entry.get("parent") or "-",
                f"[{color}]{health}[/{color}]",
                observed.get("address") or "-",
                str(slots) if entry["role"] == "leader" else "",
            )

        error_console.print(table)

    @staticmethod
    def print_data(data: Any) -> None:
        """
        Print a result to stdout as JSON.
        Handles Pydantic models and complex types.
        """
        if isinstance(data, str):
            typer.echo(data)
            return

        def json_serializer(obj):
            if isinstance(obj, BaseModel):
                return obj.model_dump(mode='json')
            if hasattr(obj, "isoformat"):
                return obj.isoformat()
            return str(obj)

        try:
            output = json.dumps(data, indent=2, default=json_serializer)
            typer.echo(output)
        except TypeError as e:
            OutputFormatter.log(f"JSON Serialization failed: {e}", severity="error")
            typer.echo(str(data))
