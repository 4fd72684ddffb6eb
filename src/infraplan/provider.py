"""Provider interface and the built-in local provider.

A provider performs the actual infrastructure mutation for one plan step.
The execution engine treats it as an opaque capability: it receives a step
whose attribute references are already substituted, and either returns the
runtime outputs of the object or raises.

See ``classify_error`` for how raised exceptions are split into transient
(retried) and permanent (surfaced) failures.
"""

from __future__ import annotations

import asyncio
import importlib
import logging
from collections.abc import Iterable, Mapping
from typing import Any, Protocol, runtime_checkable

from botocore.exceptions import (
    ClientError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)
from ulid import ULID

from .exceptions import PermanentProviderError, TransientProviderError
from .models import ErrorKind, PlanStep, ResourceId

logger = logging.getLogger(__name__)

# AWS error codes worth retrying
TRANSIENT_ERROR_CODES = frozenset(
    {
        "Throttling",
        "ThrottlingException",
        "ThrottledException",
        "RequestLimitExceeded",
        "TooManyRequestsException",
        "ProvisionedThroughputExceededException",
        "RequestThrottled",
        "RequestTimeout",
        "RequestTimeoutException",
        "ServiceUnavailable",
        "InternalError",
        "InternalFailure",
    }
)

_TRANSIENT_EXCEPTIONS = (
    asyncio.TimeoutError,
    ConnectionError,
    EndpointConnectionError,
    ConnectTimeoutError,
    ReadTimeoutError,
)


@runtime_checkable
class ProviderProtocol(Protocol):
    """
    Protocol for infrastructure providers.

    Example:
        class MyProvider:
            def requires_replacement(self, kind: str, attribute: str) -> bool:
                return attribute in {"cidr_block", "availability_zone"}

            async def apply(self, step: PlanStep) -> dict[str, Any]:
                if step.operation == "create":
                    return {"id": await create_thing(step.attributes)}
                ...

        assert isinstance(MyProvider(), ProviderProtocol)  # True at runtime
    """

    def requires_replacement(self, kind: str, attribute: str) -> bool:
        """True if changing ``attribute`` on a resource of ``kind`` forces a new object."""
        ...

    async def apply(self, step: PlanStep) -> dict[str, Any]:
        """
        Perform one step.

        Args:
            step: The step with references substituted. ``step.operation``
                is ``create``, ``update`` or ``delete``; ``step.prior``
                holds the recorded object for update and delete.

        Returns:
            Runtime outputs of the object (ignored for delete).

        Raises:
            TransientProviderError: For retry-eligible failures
            PermanentProviderError: For terminal failures
        """
        ...


def classify_error(error: BaseException) -> ErrorKind:
    """
    Default transient/permanent classifier.

    Transient: ``TransientProviderError``, asyncio and botocore timeouts or
    connection errors, and botocore ``ClientError`` with a throttling or
    5xx code. Everything else is permanent.
    """
    if isinstance(error, TransientProviderError):
        return ErrorKind.TRANSIENT
    if isinstance(error, PermanentProviderError):
        return ErrorKind.PERMANENT
    if isinstance(error, _TRANSIENT_EXCEPTIONS):
        return ErrorKind.TRANSIENT
    if isinstance(error, ClientError):
        code = error.response.get("Error", {}).get("Code", "")
        status = error.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0)
        if code in TRANSIENT_ERROR_CODES or status >= 500:
            return ErrorKind.TRANSIENT
        return ErrorKind.PERMANENT
    return ErrorKind.PERMANENT


class LocalProvider:
    """
    In-process provider that simulates infrastructure.

    Objects live in memory only; ``create`` fabricates an ``id`` output
    (``<kind>-<ulid>``) and echoes the attributes. Useful for dry runs,
    demos and tests.

    Args:
        replace_on: Per kind, attributes that cannot be changed in place
        latency: Seconds to sleep per call, to make concurrency visible
    """

    def __init__(
        self,
        replace_on: Mapping[str, Iterable[str]] | None = None,
        latency: float = 0.0,
    ) -> None:
        self.replace_on = {kind: frozenset(attrs) for kind, attrs in (replace_on or {}).items()}
        self.latency = latency
        self.objects: dict[str, dict[str, Any]] = {}
        self.calls: list[tuple[str, ResourceId]] = []

    def requires_replacement(self, kind: str, attribute: str) -> bool:
        return attribute in self.replace_on.get(kind, frozenset())

    async def apply(self, step: PlanStep) -> dict[str, Any]:
        if self.latency:
            await asyncio.sleep(self.latency)
        self.calls.append((step.operation, step.resource_id))

        if step.operation == "delete":
            object_id = (step.prior.outputs.get("id") if step.prior else None) or ""
            self.objects.pop(object_id, None)
            logger.debug("Deleted %s (%s)", step.resource_id, object_id or "untracked")
            return {}

        if step.operation == "update":
            object_id = step.prior.outputs.get("id") if step.prior else None
            if not object_id:
                raise PermanentProviderError(
                    "cannot update an object without an id", resource_id=step.resource_id
                )
        else:
            object_id = f"{step.resource_id.kind}-{str(ULID()).lower()}"

        outputs = {**step.attributes, "id": object_id}
        self.objects[object_id] = outputs
        logger.debug("Applied %s %s (%s)", step.operation, step.resource_id, object_id)
        return dict(outputs)


def load_provider(spec: str, **kwargs: Any) -> ProviderProtocol:
    """
    Instantiate a provider from ``"local"`` or a ``"module:factory"`` path.

    The factory is called with ``kwargs`` and must return an object
    satisfying ProviderProtocol.

    Raises:
        ValueError: If the path is malformed or the object is not a provider
    """
    if spec == "local":
        return LocalProvider(**kwargs)

    module_name, sep, attr = spec.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"provider {spec!r} must be 'local' or 'module:factory'")

    factory = getattr(importlib.import_module(module_name), attr)
    provider = factory(**kwargs)
    if not isinstance(provider, ProviderProtocol):
        raise ValueError(f"{spec} did not return a provider (needs requires_replacement and apply)")
    return provider
