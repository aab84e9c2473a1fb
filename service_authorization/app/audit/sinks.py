"""
Audit sinks and fire-and-forget delivery.
"""

import asyncio
import inspect
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Awaitable, Optional, Protocol, Set, Union

from shared.logging import get_logger
from shared.metrics import MetricsCollector
from ..rules.models import AuditEvent


class AuditSink(Protocol):
    """Callable receiving audit events; may be sync or async."""

    def __call__(self, event: AuditEvent) -> Union[None, Awaitable[None]]:
        ...


class NullAuditSink:
    """Discards every event."""

    def __call__(self, event: AuditEvent) -> None:
        return None


class LoggingAuditSink:
    """Writes audit events to a structlog logger."""

    def __init__(self, logger_name: str = "authorization.audit"):
        self.logger = get_logger(logger_name)

    def __call__(self, event: AuditEvent) -> None:
        payload = event.to_dict()
        event_type = payload.pop("type")
        self.logger.info("Audit event", event_type=event_type, **payload)


def is_async_sink(sink: Any) -> bool:
    return inspect.iscoroutinefunction(sink) or inspect.iscoroutinefunction(getattr(sink, "__call__", None))


class AuditDispatcher:
    """Delivers events to a sink without blocking the caller.

    Async sinks are scheduled as tasks. Sync sinks run on a single worker
    thread, so they keep dispatch order; without a running loop they are
    called inline. Failures are logged and counted, never raised.
    """

    def __init__(self, sink: Optional[AuditSink] = None, metrics: Optional[MetricsCollector] = None):
        self.sink = sink if sink is not None else NullAuditSink()
        self.metrics = metrics
        self.logger = get_logger("authorization.audit.dispatcher")
        self._pending: Set["asyncio.Future[Any]"] = set()
        self._executor: Optional[ThreadPoolExecutor] = None

    def dispatch(self, event: AuditEvent) -> None:
        if self.metrics:
            self.metrics.increment_counter("audit_events_total", event_type=event.type.value)
        if isinstance(self.sink, NullAuditSink):
            return

        try:
            if is_async_sink(self.sink):
                future = asyncio.ensure_future(self.sink(event))
            else:
                try:
                    loop = asyncio.get_running_loop()
                except RuntimeError:
                    self._deliver(event)
                    return
                future = loop.run_in_executor(self._worker(), self._deliver_or_raise, event)
        except Exception as e:
            self._record_failure(event, e)
            return

        self._pending.add(future)
        future.add_done_callback(lambda done: self._on_done(event, done))

    def _deliver(self, event: AuditEvent) -> None:
        try:
            self._deliver_or_raise(event)
        except Exception as e:
            self._record_failure(event, e)

    def _deliver_or_raise(self, event: AuditEvent) -> None:
        outcome = self.sink(event)
        if inspect.iscoroutine(outcome):
            asyncio.run(outcome)

    def _worker(self) -> ThreadPoolExecutor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="audit-sink")
        return self._executor

    async def flush(self) -> None:
        """Wait for every scheduled delivery to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def close(self) -> None:
        """Release the worker thread; call after ``flush``."""
        if self._executor is not None:
            self._executor.shutdown(wait=False)
            self._executor = None

    @property
    def pending(self) -> int:
        return len(self._pending)

    def _on_done(self, event: AuditEvent, task: "asyncio.Future[Any]") -> None:
        self._pending.discard(task)
        if task.cancelled():
            self.logger.warning("Audit delivery cancelled", event_type=event.type.value)
            return
        error = task.exception()
        if error is not None:
            self._record_failure(event, error)

    def _record_failure(self, event: AuditEvent, error: BaseException) -> None:
        self.logger.error(
            "Audit sink failed",
            event_type=event.type.value,
            entity_id=event.entity_id,
            error=str(error)
        )
        if self.metrics:
            self.metrics.increment_counter("audit_failures_total")
