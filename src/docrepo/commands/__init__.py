"""Subcommand modules for docrepo.

Provides register_commands() which uses deferred imports to keep
``docrepo --help`` fast.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    import click


def register_commands(cli: click.Group) -> None:
    """Register every standalone command on the root CLI group."""
    from docrepo.commands.documents import delete, find, get, insert
    from docrepo.commands.init_cmd import init_cmd

    cli.add_command(init_cmd)
    cli.add_command(insert)
    cli.add_command(find)
    cli.add_command(get)
    cli.add_command(delete)
