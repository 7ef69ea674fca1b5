"""Database persistence layer for litestar-bpm.

This module provides SQLAlchemy models, advanced-alchemy repositories and the
adapters that plug them into :class:`~litestar_bpm.engine.ProcessEngine` as its
definition store and instance and task repositories.
"""

from __future__ import annotations

from litestar_bpm.db.models import ProcessDefinitionModel, ProcessInstanceModel, ProcessTaskModel
from litestar_bpm.db.repositories import (
    ProcessDefinitionRepository,
    ProcessInstanceRepository,
    ProcessTaskRepository,
)
from litestar_bpm.db.stores import (
    SQLAlchemyDefinitionStore,
    SQLAlchemyInstanceRepository,
    SQLAlchemyTaskRepository,
)

__all__ = [
    "ProcessDefinitionModel",
    "ProcessDefinitionRepository",
    "ProcessInstanceModel",
    "ProcessInstanceRepository",
    "ProcessTaskModel",
    "ProcessTaskRepository",
    "SQLAlchemyDefinitionStore",
    "SQLAlchemyInstanceRepository",
    "SQLAlchemyTaskRepository",
]
