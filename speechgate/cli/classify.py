"""`speechgate classify` command: shows how a failure would be classified."""

from __future__ import annotations

import json
import sys

import click

from speechgate._types import RawFailure, RetryContext
from speechgate.cli.main import cli
from speechgate.config.settings import get_settings
from speechgate.errors.classifier import ErrorClassifier


@cli.command()
@click.option("--status", "status_code", type=int, default=None, help="HTTP status code.")
@click.option("--code", "error_code", default=None, help="Service error code.")
@click.option("--message", default=None, help="Error message.")
@click.option(
    "--attempt", type=int, default=0, show_default=True, help="Retry attempt (0-based)."
)
@click.option("--json", "as_json", is_flag=True, help="Print the result as JSON.")
def classify(
    status_code: int | None,
    error_code: str | None,
    message: str | None,
    attempt: int,
    as_json: bool,
) -> None:
    """Classifies a failure and prints the retry decision.

    The retry delay is shown without jitter.
    """
    if status_code is None and error_code is None and message is None:
        click.echo("Error: provide at least one of --status, --code or --message.", err=True)
        sys.exit(1)

    classifier = ErrorClassifier(get_settings().retry, rng=lambda: 0.0)
    failure = RawFailure(status_code=status_code, error_code=error_code, message=message)
    result = classifier.handle_error(failure, RetryContext(request_id="cli", retry_attempt=attempt))
    c = result.classification

    if as_json:
        payload = {
            "kind": c.kind.value,
            "category": c.category.value,
            "severity": c.severity.value,
            "retryable": c.retryable,
            "backoff_policy": c.backoff_policy.value,
            "should_retry": result.should_retry,
            "retry_delay_ms": result.retry_delay_ms,
            "user_message": c.user_message,
            "recovery_suggestions": list(c.recovery_suggestions),
        }
        click.echo(json.dumps(payload, indent=2))
        return

    click.echo(f"kind:           {c.kind.value}")
    click.echo(f"category:       {c.category.value}")
    click.echo(f"severity:       {c.severity.value}")
    click.echo(f"retryable:      {'yes' if c.retryable else 'no'}")
    click.echo(f"backoff:        {c.backoff_policy.value}")
    click.echo(f"should retry:   {'yes' if result.should_retry else 'no'}")
    click.echo(f"retry delay ms: {result.retry_delay_ms}")
    click.echo(f"message:        {c.user_message}")
    for suggestion in c.recovery_suggestions:
        click.echo(f"  - {suggestion}")
