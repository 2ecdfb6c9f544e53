"""Click command class shared by the document commands.

``DocumentCommand`` adds two things to a plain ``click.Command``:

- an eager ``--examples`` flag that prints usage examples and exits;
- a failure boundary. Repository and store errors escaping the callback
  are written as a failure payload to stderr with exit code 1, and every
  log record of the run carries the command path.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import click

from docrepo.config.logging import log_context

if TYPE_CHECKING:
    from docrepo.commands._context import AppContext


def _examples_option(examples: str) -> click.Option:
    def show_examples(ctx: click.Context, _param: click.Parameter, value: bool) -> None:
        if not value:
            return
        click.echo(f"Examples for '{ctx.command_path}':\n")
        click.echo(examples)
        ctx.exit(0)

    return click.Option(
        ["--examples"],
        is_flag=True,
        expose_value=False,
        is_eager=True,
        callback=show_examples,
        help="Show usage examples.",
    )


class DocumentCommand(click.Command):
    """Command with ``--examples`` and repository error reporting."""

    def __init__(self, *args: Any, examples: str | None = None, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        if examples:
            self.params.append(_examples_option(examples))

    def invoke(self, ctx: click.Context) -> Any:
        from docrepo.domain.errors import RepositoryError
        from docrepo.infrastructure.store import StoreError

        app: AppContext = ctx.obj
        op = self.name or "command"
        with log_context(command=ctx.command_path):
            try:
                return super().invoke(ctx)
            except RepositoryError as exc:
                app.fail(op, str(exc), {"code": exc.code})
            except (StoreError, ValueError) as exc:
                # ValueError: malformed filter, sort or update document
                app.fail(op, str(exc))
