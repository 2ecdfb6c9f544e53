"""Pydantic configuration models with code-baked defaults.

Sparse TOML contract: defaults baked here, docrepo.toml only contains overrides.
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field


class StoreConfig(BaseModel):
    """[store] section."""

    model_config = {"frozen": True}

    backend: Literal["memory", "sqlite"] = "memory"
    path: str = ".docrepo/docrepo.db"
    echo: bool = False


class RepositoryConfig(BaseModel):
    """[repository] section."""

    model_config = {"frozen": True}

    probe_workers: int = Field(default=1, ge=1)
    validate_references: bool = True


class DocRepoConfig(BaseModel):
    """Root config model: every TOML section."""

    model_config = {"frozen": True}

    store: StoreConfig = Field(default_factory=StoreConfig)
    repository: RepositoryConfig = Field(default_factory=RepositoryConfig)
