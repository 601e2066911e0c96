"""speechgate CLI.

Registers every command on the root group.
"""

from speechgate.cli.classify import classify
from speechgate.cli.config import config_cmd
from speechgate.cli.main import cli

__all__ = [
    "classify",
    "cli",
    "config_cmd",
]
