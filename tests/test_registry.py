"""Tests for the in-memory definition registry."""

from __future__ import annotations

import pytest

from litestar_bpm.core.definition import ProcessDefinition
from litestar_bpm.core.types import DefinitionStatus
from litestar_bpm.engine.registry import DefinitionRegistry, coerce_definition, validate_definition
from litestar_bpm.exceptions import DefinitionNotFoundError, InvalidStateError, ProcessValidationError
from tests.conftest import approval_definition, routing_definition


@pytest.mark.unit
class TestRegister:
    """Tests for registering definitions."""

    def test_register_creates_draft_versions(self, registry: DefinitionRegistry) -> None:
        """Test each registration adds a new DRAFT version."""
        first = registry.register(approval_definition())
        second = registry.register(ProcessDefinition.from_dict(approval_definition()))

        assert (first.version, second.version) == (1, 2)
        assert first.status == DefinitionStatus.DRAFT
        assert "approval" in registry
        assert "ghost" not in registry

    def test_invalid_definition_is_rejected(self, registry: DefinitionRegistry) -> None:
        """Test invalid graphs never reach the registry."""
        with pytest.raises(ProcessValidationError) as exc_info:
            registry.register({"id": "broken", "nodes": [{"id": "end", "type": "end"}]})

        assert exc_info.value.errors == ["Expected exactly one start node, found 0"]
        assert "broken" not in registry

    def test_coerce_definition(self) -> None:
        """Test wire formats and parsed definitions are both accepted."""
        parsed = ProcessDefinition.from_dict(routing_definition())

        assert coerce_definition(parsed) is parsed
        assert coerce_definition(routing_definition()) == parsed

    def test_validate_definition(self) -> None:
        """Test validation errors are raised together."""
        definition = ProcessDefinition.from_dict({"id": "empty", "nodes": []})

        with pytest.raises(ProcessValidationError, match="is invalid") as exc_info:
            validate_definition(definition)

        assert len(exc_info.value.errors) == 2


@pytest.mark.unit
class TestPublication:
    """Tests for publishing and archiving versions."""

    def test_publish_latest(self, registry: DefinitionRegistry) -> None:
        """Test publishing without version publishes the latest one."""
        registry.register(approval_definition())
        registry.register(approval_definition())

        published = registry.publish("approval")

        assert published.version == 2
        assert published.status == DefinitionStatus.PUBLISHED

    def test_publish_missing_version(self, registry: DefinitionRegistry) -> None:
        """Test publishing an unknown version."""
        registry.register(approval_definition())

        with pytest.raises(DefinitionNotFoundError) as exc_info:
            registry.publish("approval", 5)

        assert exc_info.value.version == 5

    def test_archived_versions_cannot_be_republished(self, registry: DefinitionRegistry) -> None:
        """Test archiving is final."""
        registry.register(approval_definition())
        registry.publish("approval")
        registry.archive("approval")

        with pytest.raises(InvalidStateError):
            registry.publish("approval")

    def test_list_definitions(self, registry: DefinitionRegistry) -> None:
        """Test listing is ordered by id and version and filterable by status."""
        registry.register(routing_definition())
        registry.register(approval_definition())
        registry.register(approval_definition())
        registry.publish("approval", 1)

        listed = [(item.id, item.version) for item in registry.list_definitions()]
        published = registry.list_definitions(DefinitionStatus.PUBLISHED)

        assert listed == [("approval", 1), ("approval", 2), ("routing", 1)]
        assert [(item.id, item.version) for item in published] == [("approval", 1)]


@pytest.mark.unit
@pytest.mark.asyncio
class TestLookup:
    """Tests for the definition store lookups used by the engine."""

    async def test_latest_published_wins(self, registry: DefinitionRegistry) -> None:
        """Test the newest published version is returned."""
        registry.register(approval_definition())
        registry.register(approval_definition())
        registry.register(approval_definition())
        registry.publish("approval", 1)
        registry.publish("approval", 2)

        published = await registry.get_published_definition("approval")

        assert published is not None
        assert published.version == 2

    async def test_get_definition(self, registry: DefinitionRegistry) -> None:
        """Test lookups by version and of the latest version."""
        registry.register(approval_definition())
        registry.register(approval_definition())

        latest = await registry.get_definition("approval")
        first = await registry.get_definition("approval", 1)

        assert latest is not None
        assert latest.version == 2
        assert first is not None
        assert first.version == 1
        assert await registry.get_definition("approval", 9) is None
        assert await registry.get_definition("ghost") is None
        assert await registry.get_published_definition("ghost") is None
