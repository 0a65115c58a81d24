"""Output formatters for human-readable and JSON output."""

import json
import sys
from typing import Any

import click


def format_json(data: Any, success: bool = True) -> str:
    """Format data as a JSON envelope."""
    if success:
        output = {"success": True, "data": data}
    else:
        output = data  # Error dict already has success: false
    return json.dumps(output, indent=2, default=str)


def error_details(
    error: Exception,
    error_type: str | None = None,
    help_text: str | None = None,
) -> dict[str, Any]:
    """Describe an error, including any diagnostic payload it carries."""
    details: dict[str, Any] = {
        "type": error_type or type(error).__name__,
        "message": str(error),
        "help": help_text or "",
    }
    payload = getattr(error, "payload", None)
    if payload is not None:
        details["payload"] = payload
    return details


def format_error_json(
    error: Exception,
    error_type: str | None = None,
    help_text: str | None = None,
) -> str:
    """Format an error as JSON."""
    return json.dumps(
        {"success": False, "error": error_details(error, error_type, help_text)},
        indent=2,
        default=str,
    )


class OutputHandler:
    """Handles output formatting based on mode (JSON or human).

    In JSON mode stdout carries exactly one JSON document per command;
    progress messages are dropped so the output stays parseable.
    """

    def __init__(self, json_mode: bool = False):
        self.json_mode = json_mode

    def status(self, message: str) -> None:
        """Show a progress message (human mode only, on stderr)."""
        if not self.json_mode:
            click.secho(message, fg="cyan", err=True)

    def success(self, data: Any, human_message: str | None = None) -> None:
        """Output success response."""
        if self.json_mode:
            click.echo(format_json(data))
        elif human_message:
            click.echo(human_message)
        else:
            click.echo(json.dumps(data, indent=2, default=str))

    def error(
        self,
        error: Exception,
        error_type: str | None = None,
        help_text: str | None = None,
    ) -> None:
        """Output error response and exit with status 1."""
        if self.json_mode:
            click.echo(format_error_json(error, error_type, help_text))
        else:
            click.secho(f"Error: {error}", fg="red", err=True)
            if help_text:
                click.echo(f"\n{help_text}", err=True)
        sys.exit(1)

    def table(self, headers: list[str], rows: list[list[str]]) -> None:
        """Output a table (human mode only, JSON mode outputs raw data)."""
        if self.json_mode:
            click.echo(format_json([dict(zip(headers, row)) for row in rows]))
            return

        widths = [len(h) for h in headers]
        for row in rows:
            for i, cell in enumerate(row):
                widths[i] = max(widths[i], len(str(cell)))

        header_line = "  ".join(h.ljust(widths[i]) for i, h in enumerate(headers))
        click.secho(header_line, bold=True)
        click.echo("-" * len(header_line))
        for row in rows:
            click.echo("  ".join(str(c).ljust(widths[i]) for i, c in enumerate(row)))
