"""AppContext — shared Click context for all commands.

Created once by the root CLI group and flows to all subcommands via
``@click.pass_obj``. Opens the SQLite store lazily and centralizes output
(stdout/stderr routing + exit codes).
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, NoReturn

import click

from docrepo.output.formatters import format_payload

if TYPE_CHECKING:
    from docrepo.config.settings import DocRepoSettings
    from docrepo.domain.entity import GenericDocument
    from docrepo.services.factory import DocumentRepositoryFactory
    from docrepo.services.repository import DocumentRepository


class AppContext:
    """Shared context flowing through Click's command hierarchy.

    The store is opened on first use so ``--help`` and ``--version`` never
    touch the database. The CLI always works on the SQLite store at
    ``settings.resolved_store_path``; the in-memory backend would not
    outlive the process.
    """

    def __init__(self, settings: DocRepoSettings) -> None:
        self.settings = settings
        self._factory: DocumentRepositoryFactory | None = None

        from docrepo.config.logging import configure_logging

        configure_logging(verbose=settings.verbose, log_json=settings.log_json)

    @property
    def factory(self) -> DocumentRepositoryFactory:
        if self._factory is None:
            from docrepo.infrastructure.database import SqlDocumentStore
            from docrepo.services.factory import DocumentRepositoryFactory

            store = SqlDocumentStore.open(
                self.settings.resolved_store_path, echo=self.settings.store.echo
            )
            self._factory = DocumentRepositoryFactory(
                store,
                probe_workers=self.settings.repository.probe_workers,
                validate_references=self.settings.repository.validate_references,
            )
        return self._factory

    def repository(self, collection: str) -> DocumentRepository[GenericDocument]:
        """Schemaless repository over *collection*."""
        from docrepo.domain.entity import GenericDocument

        existing = self.factory.get(collection)
        if existing is not None:
            return existing
        return self.factory.create(GenericDocument, collection=collection)

    def emit(self, op: str, data: dict[str, Any] | None = None) -> None:
        """Write a successful outcome to stdout."""
        click.echo(format_payload(op, data, json_output=self.settings.json_output))

    def fail(self, op: str, message: str, data: dict[str, Any] | None = None) -> NoReturn:
        """Write a failure to stderr and exit with code 1."""
        output = format_payload(
            op, data, ok=False, error=message, json_output=self.settings.json_output
        )
        click.echo(output, err=True)
        raise SystemExit(1)

    def close(self) -> None:
        if self._factory is not None:
            self._factory.close()
            self._factory = None
