"""`speechgate config` command: prints the effective settings."""

from __future__ import annotations

import json
import sys

import click

from speechgate.cli.main import cli
from speechgate.config.settings import SpeechGateSettings, get_settings


@cli.command("config")
@click.option(
    "--section",
    type=click.Choice(sorted(SpeechGateSettings.model_fields)),
    default=None,
    help="Only print one settings section.",
)
def config_cmd(section: str | None) -> None:
    """Prints effective settings (defaults, .env and SPEECHGATE_* variables) as JSON."""
    try:
        settings = get_settings()
    except ValueError as exc:
        click.echo(f"Error: invalid configuration: {exc}", err=True)
        sys.exit(1)

    data = settings.model_dump(mode="json")
    if section is not None:
        data = data[section]
    click.echo(json.dumps(data, indent=2, sort_keys=True))
