"""Command: database initialization (named init_cmd to avoid shadowing builtins)."""

from __future__ import annotations

from typing import TYPE_CHECKING

import click

from docrepo.commands._base import DocumentCommand

if TYPE_CHECKING:
    from docrepo.commands._context import AppContext

_INIT_EXAMPLES = """\
  docrepo init
  docrepo -c ./docrepo.toml init
  DOCREPO_STORE__PATH=/tmp/docs.db docrepo init"""


@click.command("init", cls=DocumentCommand, examples=_INIT_EXAMPLES)
@click.pass_obj
def init_cmd(app: AppContext) -> None:
    """Create the SQLite document database (idempotent)."""
    from docrepo.infrastructure.database import init_database

    path = app.settings.resolved_store_path
    engine = init_database(path, echo=app.settings.store.echo)
    engine.dispose()
    app.emit("init", {"path": str(path)})
