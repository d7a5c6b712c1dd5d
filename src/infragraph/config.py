"""Runtime settings, loaded from an optional YAML file."""

from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field

from infragraph.core.flatten import DEFAULT_SENSITIVE_TOKENS, Flattener
from infragraph.core.registry import ClassificationRegistry
from infragraph.store.base import GraphStore
from infragraph.store.memory import InMemoryGraphStore
from infragraph.store.upsert import RetryPolicy


class StoreBackend(str, Enum):
    MEMORY = "memory"
    NEO4J = "neo4j"


class StoreSettings(BaseModel):
    backend: StoreBackend = StoreBackend.MEMORY
    uri: str = "bolt://localhost:7687"
    user: str = "neo4j"
    password: str | None = None
    database: str = "neo4j"
    connection_timeout: float = 30.0


class RetrySettings(BaseModel):
    max_attempts: int = Field(default=3, ge=1)
    base_delay: float = Field(default=0.1, ge=0)
    max_delay: float = Field(default=2.0, ge=0)
    timeout: float | None = Field(default=30.0, gt=0)

    def policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.max_attempts,
            base_delay=self.base_delay,
            max_delay=self.max_delay,
            timeout=self.timeout,
        )


class Settings(BaseModel):
    """
    Settings for one infragraph run.

    Every section is optional. `classification` holds registry additions in
    the same shape as the registry itself; they extend the defaults.
    """

    sensitive_tokens: list[str] = Field(default_factory=lambda: list(DEFAULT_SENSITIVE_TOKENS))
    max_workers: int | None = Field(default=None, ge=1)
    source_tag: str = "default"
    store: StoreSettings = Field(default_factory=StoreSettings)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    classification: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def load(cls, path: str | Path | None) -> Settings:
        """Load settings from YAML; a missing path yields the defaults."""
        if path is None:
            return cls()
        path = Path(path)
        with path.open() as f:
            data = yaml.safe_load(f) or {}
        return cls(**data)

    def registry(self) -> ClassificationRegistry:
        return ClassificationRegistry.from_dict(self.classification)

    def flattener(self) -> Flattener:
        return Flattener(self.sensitive_tokens)

    def open_store(self, password: str | None = None) -> GraphStore:
        """Instantiate the configured store backend."""
        if self.store.backend == StoreBackend.NEO4J:
            from infragraph.store.neo4j import Neo4jConfig, Neo4jGraphStore

            return Neo4jGraphStore(
                Neo4jConfig(
                    uri=self.store.uri,
                    user=self.store.user,
                    password=password or self.store.password or "",
                    database=self.store.database,
                    connection_timeout=self.store.connection_timeout,
                )
            )
        return InMemoryGraphStore()
