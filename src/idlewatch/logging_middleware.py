from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator
import uuid
import logging
from litestar.middleware.base import ASGIMiddleware
from litestar.types import ASGIApp, Scope, Receive, Send, Message
from litestar.datastructures import MutableScopeHeaders


correlation_id_contextvar: ContextVar[str] = ContextVar("correlation_id")


@contextmanager
def correlation_scope(prefix: str) -> Iterator[str]:
    """Tag every log line emitted inside the block with a fresh correlation ID."""
    correlation_id = f"{prefix}-{uuid.uuid4().hex[:12]}"
    token = correlation_id_contextvar.set(correlation_id)
    try:
        yield correlation_id
    finally:
        correlation_id_contextvar.reset(token)


class CorrelationFormatter(logging.Formatter):
    """Formatter that falls back to 'system' for records without a correlation ID."""

    def format(self, record: logging.LogRecord) -> str:
        if not hasattr(record, "correlation_id"):
            record.correlation_id = "system"
        return super().format(record)


class CorrelationFilter(logging.Filter):
    """Copies the current correlation ID onto each record when it is created."""

    def __init__(self, contextvar: ContextVar[str]):
        super().__init__()
        self.contextvar = contextvar

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = self.contextvar.get("system")
        return True


class CorrelationMiddleware(ASGIMiddleware):
    """Reads or assigns X-Correlation-ID for each HTTP request and echoes it back."""

    def __init__(self, contextvar: ContextVar[str]):
        super().__init__()
        self.contextvar = contextvar

    async def handle(self, scope: Scope, receive: Receive, send: Send, next_app: ASGIApp) -> None:
        if scope["type"] != "http":
            await next_app(scope, receive, send)
            return

        correlation_id: str | None = None
        for name, value in scope.get("headers", []):
            if name.lower() == b"x-correlation-id":
                correlation_id = value.decode("utf-8")
                break

        if not correlation_id:
            correlation_id = f"http-{uuid.uuid4().hex[:12]}"

        token = self.contextvar.set(correlation_id)

        async def send_wrapper(message: Message) -> None:
            if message["type"] == "http.response.start":
                response_headers = MutableScopeHeaders.from_message(message=message)
                response_headers["X-Correlation-ID"] = str(correlation_id)
            await send(message)

        try:
            await next_app(scope, receive, send_wrapper)
        finally:
            self.contextvar.reset(token)
