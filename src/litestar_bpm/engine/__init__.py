"""Process execution engine.

This module provides the graph walk, gateway evaluation, node dispatch and the
instance and task state machines, wired together by :class:`ProcessEngine`.
"""

from __future__ import annotations

from litestar_bpm.engine.dispatcher import NodeDispatcher, NodeOutcome
from litestar_bpm.engine.gateway import GatewayDecision, GatewayEvaluator
from litestar_bpm.engine.graph import ProcessGraph
from litestar_bpm.engine.handlers import (
    CustomServiceHandler,
    DatabaseHandler,
    EmailHandler,
    EmailMessage,
    HandlerRegistry,
    HttpHandler,
    ScriptHandler,
)
from litestar_bpm.engine.instances import InstanceStateMachine
from litestar_bpm.engine.locks import InstanceLocks
from litestar_bpm.engine.memory import InMemoryInstanceRepository, InMemoryTaskRepository, StaticGroupDirectory
from litestar_bpm.engine.notifications import EventPublisher, LoggingNotifier
from litestar_bpm.engine.orchestrator import ProcessEngine
from litestar_bpm.engine.queue import Continuation, QueueStats, WorkQueue
from litestar_bpm.engine.registry import DefinitionRegistry
from litestar_bpm.engine.tasks import TaskStateMachine

__all__ = [
    "Continuation",
    "CustomServiceHandler",
    "DatabaseHandler",
    "DefinitionRegistry",
    "EmailHandler",
    "EmailMessage",
    "EventPublisher",
    "GatewayDecision",
    "GatewayEvaluator",
    "HandlerRegistry",
    "HttpHandler",
    "InMemoryInstanceRepository",
    "InMemoryTaskRepository",
    "InstanceLocks",
    "InstanceStateMachine",
    "LoggingNotifier",
    "NodeDispatcher",
    "NodeOutcome",
    "ProcessEngine",
    "ProcessGraph",
    "QueueStats",
    "ScriptHandler",
    "StaticGroupDirectory",
    "TaskStateMachine",
    "WorkQueue",
]
