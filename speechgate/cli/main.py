"""Root click group for the ``speechgate`` command."""

from __future__ import annotations

import click

from speechgate import __version__


@click.group()
@click.version_option(version=__version__, prog_name="speechgate")
def cli() -> None:
    """speechgate - request coordination and caching for speech-transcription APIs."""
