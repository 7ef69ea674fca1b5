"""In-memory definition store with versioning and publication state."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import replace
from typing import Any

from litestar_bpm.core.definition import ProcessDefinition
from litestar_bpm.core.types import DefinitionStatus
from litestar_bpm.exceptions import DefinitionNotFoundError, InvalidStateError, ProcessValidationError

__all__ = ["DefinitionRegistry", "coerce_definition", "validate_definition"]

logger = logging.getLogger(__name__)


def coerce_definition(definition: ProcessDefinition | Mapping[str, Any]) -> ProcessDefinition:
    """Accept a parsed definition or its wire format."""
    if isinstance(definition, Mapping):
        return ProcessDefinition.from_dict(definition)
    return definition


def validate_definition(definition: ProcessDefinition) -> None:
    """Validate a definition graph.

    Raises:
        ProcessValidationError: If the graph breaks a structural invariant.
    """
    errors = definition.validate()
    if errors:
        msg = f"Process definition '{definition.id}' is invalid"
        raise ProcessValidationError(msg, errors)


class DefinitionRegistry:
    """Registry of process definition versions.

    Every :meth:`register` call stores a new DRAFT version. Instances can only
    be started from published versions; the latest published version wins.

    Example:
        >>> registry = DefinitionRegistry()
        >>> registry.register({"id": "expense", "nodes": [...], "edges": [...]})
        >>> registry.publish("expense")
    """

    def __init__(self) -> None:
        self._versions: dict[str, list[ProcessDefinition]] = {}

    def __contains__(self, definition_id: object) -> bool:
        return definition_id in self._versions

    def register(self, definition: ProcessDefinition | Mapping[str, Any]) -> ProcessDefinition:
        """Validate and store a new version of a definition.

        Args:
            definition: The definition or its wire format.

        Returns:
            The stored DRAFT version.

        Raises:
            ProcessValidationError: If the definition is invalid.
        """
        definition = coerce_definition(definition)
        validate_definition(definition)
        versions = self._versions.setdefault(definition.id, [])
        stored = replace(definition, version=len(versions) + 1, status=DefinitionStatus.DRAFT)
        versions.append(stored)
        logger.info("Registered process definition %s v%d", stored.id, stored.version)
        return stored

    def publish(self, definition_id: str, version: int | None = None) -> ProcessDefinition:
        """Publish a version, the latest one by default.

        Raises:
            DefinitionNotFoundError: If the version does not exist.
            InvalidStateError: If the version is archived.
        """
        definition = self._lookup(definition_id, version)
        if definition.status == DefinitionStatus.ARCHIVED:
            msg = f"Process definition '{definition_id}' v{definition.version} is archived"
            raise InvalidStateError(msg, current_status=definition.status)
        logger.info("Published process definition %s v%d", definition_id, definition.version)
        return self._store(definition.with_status(DefinitionStatus.PUBLISHED))

    def archive(self, definition_id: str, version: int | None = None) -> ProcessDefinition:
        """Archive a version so that no new instances start from it.

        Running instances pinned to the version are not affected.

        Raises:
            DefinitionNotFoundError: If the version does not exist.
        """
        definition = self._lookup(definition_id, version)
        logger.info("Archived process definition %s v%d", definition_id, definition.version)
        return self._store(definition.with_status(DefinitionStatus.ARCHIVED))

    def list_definitions(self, status: DefinitionStatus | None = None) -> list[ProcessDefinition]:
        """Return every stored version, ordered by id and version."""
        return [
            definition
            for definition_id in sorted(self._versions)
            for definition in self._versions[definition_id]
            if status is None or definition.status == status
        ]

    async def get_published_definition(self, definition_id: str) -> ProcessDefinition | None:
        for definition in reversed(self._versions.get(definition_id, [])):
            if definition.status == DefinitionStatus.PUBLISHED:
                return definition
        return None

    async def get_definition(self, definition_id: str, version: int | None = None) -> ProcessDefinition | None:
        versions = self._versions.get(definition_id)
        if not versions:
            return None
        if version is None:
            return versions[-1]
        for definition in versions:
            if definition.version == version:
                return definition
        return None

    def _lookup(self, definition_id: str, version: int | None) -> ProcessDefinition:
        versions = self._versions.get(definition_id, [])
        if version is None and versions:
            return versions[-1]
        for definition in versions:
            if definition.version == version:
                return definition
        raise DefinitionNotFoundError(definition_id, version)

    def _store(self, definition: ProcessDefinition) -> ProcessDefinition:
        versions = self._versions[definition.id]
        versions[definition.version - 1] = definition
        return definition
