import json
import typer
from typing import Any, List, Tuple
from pydantic import BaseModel
from rich.console import Console
from rich.table import Table

# Create a stderr console for operator messages
error_console = Console(stderr=True)

class OutputFormatter:
    """
    Handles output formatting for the CLI.
    System messages go to stderr, data (responses, command lines) to stdout.
    """

    @staticmethod
    def log(message: str, severity: str = "info") -> None:
        """
        Print system messages to stderr with color coding.
        """
        style = "white"
        prefix = "[AGENT]"

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
    def print_launch_plan(rows: List[Tuple[str, str, List[str]]]) -> None:
        """
        Print one row per process a start command would launch: role, log file, argv.
        """
        table = Table(title="Launch Plan", header_style="bold cyan")
        table.add_column("Role", style="bold")
        table.add_column("Log")
        table.add_column("Command")

        for role, log_path, argv in rows:
            table.add_row(role, log_path, " ".join(argv))

        Console().print(table)

    @staticmethod
    def print_data(data: Any) -> None:
        """
        Print a result to stdout as JSON.
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
