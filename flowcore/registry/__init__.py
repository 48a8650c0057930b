"""Registry of workflow types and their transition tables."""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional

import yaml
from pydantic import ValidationError

from ..errors import ConfigError, UnsupportedWorkflow
from .builtin import BUILTIN_WORKFLOWS
from .models import StepSpec, TransitionTable

logger = logging.getLogger(__name__)


class WorkflowRegistry:
    """Maps ``workflow_type`` to its :class:`TransitionTable`.

    Tables are registered once at startup; lookups afterwards are read-only.
    """

    def __init__(self, tables: Iterable[TransitionTable] = ()) -> None:
        self._tables: Dict[str, TransitionTable] = {}
        for table in tables:
            self.register(table)

    def register(self, table: TransitionTable, replace: bool = False) -> None:
        if table.workflow_type in self._tables and not replace:
            raise ConfigError(f"Workflow type already registered: {table.workflow_type}")
        self._tables[table.workflow_type] = table
        logger.debug(f"Registered workflow type {table.workflow_type}")

    def get(self, workflow_type: str) -> TransitionTable:
        try:
            return self._tables[workflow_type]
        except KeyError:
            raise UnsupportedWorkflow(workflow_type) from None

    def __contains__(self, workflow_type: object) -> bool:
        return workflow_type in self._tables

    def __len__(self) -> int:
        return len(self._tables)

    def types(self) -> List[str]:
        return sorted(self._tables)

    def load_definitions(self, definitions: Iterable[Dict[str, Any]]) -> List[str]:
        """Validate and register raw (YAML/JSON) transition table definitions."""
        loaded = []
        for raw in definitions:
            try:
                table = TransitionTable.model_validate(raw)
            except ValidationError as e:
                raise ConfigError(f"Invalid workflow definition: {e}") from e
            self.register(table, replace=True)
            loaded.append(table.workflow_type)
        return loaded

    def load_file(self, path: str) -> List[str]:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        return self.load_definitions(data.get("workflows", []))


def default_registry(extra: Optional[Iterable[Dict[str, Any]]] = None) -> WorkflowRegistry:
    """Build a registry holding the built-in workflow types plus ``extra``."""

    registry = WorkflowRegistry(BUILTIN_WORKFLOWS)
    if extra:
        registry.load_definitions(extra)
    return registry


REGISTRY = default_registry()


__all__ = [
    "StepSpec",
    "TransitionTable",
    "WorkflowRegistry",
    "REGISTRY",
    "default_registry",
]
