"""Handlers for service and script tasks.

The dispatcher looks handlers up by ``serviceType`` in a
:class:`HandlerRegistry`. Built-in handlers cover ``http``, ``email``,
``script``, ``database`` and ``custom``; any of them can be replaced by
registering another callable under the same key.

Example:
    >>> registry = HandlerRegistry.with_defaults()
    >>> async def geocode(context, config):
    ...     return {"lat": 0.0, "lng": 0.0}
    >>> registry.register("geocode", geocode)
"""

from __future__ import annotations

import inspect
import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import httpx
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from litestar_bpm.core.expressions import ExpressionEvaluator, render_value
from litestar_bpm.core.types import ServiceType
from litestar_bpm.exceptions import BpmError, ServiceTaskError

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine

    from litestar_bpm.core.context import ExecutionContext
    from litestar_bpm.core.definition import ServiceTaskConfig
    from litestar_bpm.core.protocols import NodeHandler

__all__ = [
    "CustomServiceHandler",
    "DatabaseHandler",
    "EmailHandler",
    "EmailMessage",
    "HandlerRegistry",
    "HttpHandler",
    "ScriptHandler",
]

logger = logging.getLogger(__name__)

_BODY_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})


def _as_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    return [str(item) for item in value]


class HandlerRegistry:
    """Maps service types to node handlers.

    Attributes:
        _handlers: Registered handlers keyed by service type.
    """

    def __init__(self, handlers: Mapping[str, NodeHandler] | None = None) -> None:
        """Initialize the registry.

        Args:
            handlers: Initial handlers keyed by service type.
        """
        self._handlers: dict[str, NodeHandler] = dict(handlers or {})

    @classmethod
    def with_defaults(
        cls,
        *,
        http_timeout: float = 30.0,
        http_transport: httpx.AsyncBaseTransport | None = None,
        email_sender: Callable[[EmailMessage], Awaitable[Any]] | None = None,
        database_engine: AsyncEngine | None = None,
        services: Mapping[str, Any] | None = None,
        expressions: ExpressionEvaluator | None = None,
    ) -> HandlerRegistry:
        """Build a registry holding the built-in handlers.

        Args:
            http_timeout: Default timeout for HTTP calls.
            http_transport: Optional httpx transport, mainly for tests.
            email_sender: Coroutine function that delivers emails.
            database_engine: Async engine used by database tasks.
            services: Objects callable from ``custom`` tasks, keyed by name.
            expressions: Evaluator used by script tasks.

        Returns:
            A populated registry.
        """
        return cls(
            {
                ServiceType.HTTP: HttpHandler(timeout=http_timeout, transport=http_transport),
                ServiceType.EMAIL: EmailHandler(sender=email_sender),
                ServiceType.SCRIPT: ScriptHandler(expressions=expressions),
                ServiceType.DATABASE: DatabaseHandler(engine=database_engine),
                ServiceType.CUSTOM: CustomServiceHandler(services=services),
            },
        )

    def register(self, service_type: str, handler: NodeHandler) -> None:
        """Register or replace the handler for a service type.

        Args:
            service_type: The ``serviceType`` value the handler serves.
            handler: The handler.
        """
        self._handlers[str(service_type)] = handler

    def unregister(self, service_type: str) -> None:
        """Remove the handler for a service type, if present."""
        self._handlers.pop(str(service_type), None)

    def get(self, service_type: str) -> NodeHandler:
        """Return the handler for a service type.

        Raises:
            ServiceTaskError: If no handler is registered for it.
        """
        try:
            return self._handlers[str(service_type)]
        except KeyError:
            raise ServiceTaskError(str(service_type), "no handler registered") from None

    def __contains__(self, service_type: object) -> bool:
        return str(service_type) in self._handlers

    @property
    def service_types(self) -> list[str]:
        """Registered service types, sorted."""
        return sorted(self._handlers)


class HttpHandler:
    """Calls an HTTP endpoint with httpx.

    Options: ``url`` (required), ``method`` (GET), ``headers``, ``body`` and
    ``timeout``. All options are templated against the process variables.
    Non-2xx responses and transport errors raise :class:`ServiceTaskError`.
    """

    def __init__(self, timeout: float = 30.0, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.timeout = timeout
        self.transport = transport

    async def __call__(self, context: ExecutionContext, config: ServiceTaskConfig) -> dict[str, Any]:
        options = render_value(config.options, context.variables)
        url = options.get("url")
        if not url:
            raise ServiceTaskError(ServiceType.HTTP, "'url' is required")
        method = str(options.get("method") or "GET").upper()
        body = options.get("body", options.get("data"))
        timeout = float(options.get("timeout") or self.timeout)

        async with httpx.AsyncClient(timeout=timeout, transport=self.transport) as client:
            try:
                response = await client.request(
                    method,
                    url,
                    headers=options.get("headers") or None,
                    json=body if method in _BODY_METHODS and body is not None else None,
                )
                response.raise_for_status()
            except httpx.HTTPStatusError as exc:
                msg = f"{method} {url} returned {exc.response.status_code}"
                raise ServiceTaskError(ServiceType.HTTP, msg) from exc
            except httpx.HTTPError as exc:
                msg = f"{method} {url} failed: {exc}"
                raise ServiceTaskError(ServiceType.HTTP, msg) from exc

        try:
            data: Any = response.json()
        except ValueError:
            data = response.text
        return {"success": True, "status": response.status_code, "url": url, "data": data}


@dataclass
class EmailMessage:
    """An email produced by an email task."""

    to: list[str]
    subject: str
    body: str | None = None
    cc: list[str] = field(default_factory=list)
    bcc: list[str] = field(default_factory=list)
    template: str | None = None


class EmailHandler:
    """Builds an email from templated options and hands it to a sender.

    Options: ``to`` and ``subject`` (required), ``body``, ``cc``, ``bcc`` and
    ``template``. Without a sender the message is only logged.
    """

    def __init__(self, sender: Callable[[EmailMessage], Awaitable[Any]] | None = None) -> None:
        self.sender = sender

    async def __call__(self, context: ExecutionContext, config: ServiceTaskConfig) -> dict[str, Any]:
        options = render_value(config.options, context.variables)
        recipients = _as_list(options.get("to"))
        subject = options.get("subject")
        if not recipients or not subject:
            raise ServiceTaskError(ServiceType.EMAIL, "'to' and 'subject' are required")
        message = EmailMessage(
            to=recipients,
            subject=str(subject),
            body=options.get("body"),
            cc=_as_list(options.get("cc")),
            bcc=_as_list(options.get("bcc")),
            template=options.get("template"),
        )
        if self.sender is None:
            logger.info("No email sender configured; email '%s' to %s not delivered", message.subject, message.to)
        else:
            await self.sender(message)
        return {
            "success": True,
            "delivered": self.sender is not None,
            "recipients": message.to,
            "subject": message.subject,
        }


class ScriptHandler:
    """Evaluates the ``script`` option with the sandboxed expression evaluator."""

    def __init__(self, expressions: ExpressionEvaluator | None = None) -> None:
        self.expressions = expressions or ExpressionEvaluator()

    async def __call__(self, context: ExecutionContext, config: ServiceTaskConfig) -> Any:
        script = config.options.get("script")
        if not script:
            raise ServiceTaskError(ServiceType.SCRIPT, "'script' is required")
        try:
            return self.expressions.evaluate(str(script), context.variables)
        except (BpmError, ArithmeticError, LookupError, TypeError, ValueError) as exc:
            raise ServiceTaskError(ServiceType.SCRIPT, str(exc)) from exc


class DatabaseHandler:
    """Runs a parameterized SQL statement on a configured async engine.

    The ``query`` option is passed to :func:`sqlalchemy.text` verbatim; only the
    ``params`` option is templated, so variable values always travel as bound
    parameters.
    """

    def __init__(self, engine: AsyncEngine | None = None) -> None:
        self.engine = engine

    async def __call__(self, context: ExecutionContext, config: ServiceTaskConfig) -> dict[str, Any]:
        if self.engine is None:
            raise ServiceTaskError(ServiceType.DATABASE, "no database engine configured")
        query = config.options.get("query")
        if not query:
            raise ServiceTaskError(ServiceType.DATABASE, "'query' is required")
        params = render_value(config.options.get("params") or config.options.get("parameters") or {}, context.variables)

        try:
            async with self.engine.begin() as connection:
                result = await connection.execute(text(str(query)), params)
                if result.returns_rows:
                    rows = [dict(row._mapping) for row in result]
                    return {"success": True, "rowCount": len(rows), "rows": rows}
                return {"success": True, "rowCount": result.rowcount}
        except SQLAlchemyError as exc:
            raise ServiceTaskError(ServiceType.DATABASE, str(exc)) from exc


class CustomServiceHandler:
    """Invokes ``method`` on a service registered under ``serviceName``.

    The method receives the templated ``params`` option and may be sync or async.
    """

    def __init__(self, services: Mapping[str, Any] | None = None) -> None:
        self._services: dict[str, Any] = dict(services or {})

    def register_service(self, name: str, service: Any) -> None:
        """Expose an object to ``custom`` tasks under a name."""
        self._services[name] = service

    async def __call__(self, context: ExecutionContext, config: ServiceTaskConfig) -> Any:
        name = config.options.get("serviceName") or config.options.get("service_name")
        method_name = config.options.get("method")
        if not name or not method_name:
            raise ServiceTaskError(ServiceType.CUSTOM, "'serviceName' and 'method' are required")
        service = self._services.get(name)
        if service is None:
            raise ServiceTaskError(ServiceType.CUSTOM, f"service '{name}' is not registered")
        method = getattr(service, str(method_name), None) if not str(method_name).startswith("_") else None
        if method is None or not callable(method):
            raise ServiceTaskError(ServiceType.CUSTOM, f"service '{name}' has no method '{method_name}'")

        result = method(render_value(config.options.get("params") or {}, context.variables))
        if inspect.isawaitable(result):
            result = await result
        return result
