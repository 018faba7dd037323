"""
Job handler registry — maps JobType values to handler instances.

When a worker leases a job, it knows the job_type ("screenshot_capture",
"ai_tagging", ...) but needs the actual handler to execute it. This registry
does that lookup.

Lifecycle:
    build once at process start (from_handlers / discover_handlers)
    → freeze()
    → lookups from any number of worker threads, no locking needed

There is deliberately no module-level registry: the worker entry point
builds one and hands it to the orchestrator, tests build their own.
"""

import logging
from importlib.metadata import entry_points
from typing import Iterable, Union

from jobs.base import AbstractJobHandler
from models.enums import JobType
from orchestrator.errors import DuplicateHandler, RegistryFrozen, UnknownJobType

logger = logging.getLogger(__name__)


def _coerce_type(job_type: Union[JobType, str]) -> JobType:
    try:
        return JobType(job_type)
    except ValueError:
        raise UnknownJobType(job_type, [t.value for t in JobType]) from None


class HandlerRegistry:

    def __init__(self):
        self._handlers: dict[JobType, AbstractJobHandler] = {}
        self._frozen = False

    @classmethod
    def from_handlers(cls, handlers: Iterable[AbstractJobHandler]) -> "HandlerRegistry":
        """Build a frozen registry. Two handlers for one type abort startup."""
        registry = cls()
        for handler in handlers:
            registry.register(handler.job_type, handler)
        registry.freeze()
        logger.info(f"Initialized handler registry with {len(registry)} handlers")
        return registry

    def register(self, job_type: Union[JobType, str], handler: AbstractJobHandler) -> None:
        if self._frozen:
            raise RegistryFrozen("Handler registry is read-only after startup")
        job_type = _coerce_type(job_type)
        existing = self._handlers.get(job_type)
        if existing is not None:
            raise DuplicateHandler(job_type.value, existing, handler)
        self._handlers[job_type] = handler
        logger.debug(
            f"Registered {type(handler).__name__} for {job_type.value} "
            f"(queue: {job_type.queue.value})"
        )

    def lookup(self, job_type: Union[JobType, str]) -> AbstractJobHandler:
        """Look up a handler by job type. Raises UnknownJobType if none is registered."""
        try:
            key = JobType(job_type)
        except ValueError:
            key = None
        handler = self._handlers.get(key) if key is not None else None
        if handler is None:
            raise UnknownJobType(job_type, [t.value for t in self._handlers])
        return handler

    def freeze(self) -> None:
        self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen

    def registered_types(self) -> list[JobType]:
        return list(self._handlers)

    def __contains__(self, job_type) -> bool:
        try:
            return JobType(job_type) in self._handlers
        except ValueError:
            return False

    def __len__(self) -> int:
        return len(self._handlers)


def discover_handlers(group: str) -> list[AbstractJobHandler]:
    """
    Instantiate every handler advertised under an entry point group.

    An entry point may name a handler class or a zero-argument factory;
    either way calling it must produce an AbstractJobHandler.
    """
    handlers = []
    for ep in entry_points(group=group):
        factory = ep.load()
        handler = factory()
        if not isinstance(handler, AbstractJobHandler):
            raise TypeError(
                f"Entry point '{ep.name}' in group '{group}' produced "
                f"{type(handler).__name__}, not an AbstractJobHandler"
            )
        handlers.append(handler)
        logger.debug(f"Discovered handler {type(handler).__name__} via '{ep.name}'")
    return handlers
