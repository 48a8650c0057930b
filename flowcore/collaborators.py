"""External collaborators that execute job kinds.

A collaborator receives the job payload together with the job's
idempotency key. Deduplicating repeated deliveries of the same key is the
collaborator's responsibility; workers never do it for them.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol, Union

import httpx
from pydantic import BaseModel

from .errors import ConfigError, FatalExecutionFailure, TransientExecutionFailure

logger = logging.getLogger(__name__)


class CollaboratorResult(BaseModel):
    """What a collaborator hands back after a successful call."""

    output: Any = None
    metadata: Dict[str, Any] = {}


class Collaborator(Protocol):
    async def invoke(
        self, payload: Dict[str, Any], idempotency_key: str
    ) -> CollaboratorResult: ...


Handler = Callable[[Dict[str, Any], str], Union[Any, Awaitable[Any]]]


class CallableCollaborator:
    """Wrap a plain sync or async function ``fn(payload, idempotency_key)``.

    Sync functions run in a thread so they cannot stall the event loop.
    """

    def __init__(self, fn: Handler, name: Optional[str] = None) -> None:
        self._fn = fn
        self.name = name or getattr(fn, "__name__", repr(fn))

    async def invoke(
        self, payload: Dict[str, Any], idempotency_key: str
    ) -> CollaboratorResult:
        if inspect.iscoroutinefunction(self._fn):
            output = await self._fn(payload, idempotency_key)
        else:
            output = await asyncio.to_thread(self._fn, payload, idempotency_key)
        if isinstance(output, CollaboratorResult):
            return output
        return CollaboratorResult(output=output)


class HttpCollaborator:
    """POST the payload to an HTTP endpoint.

    The idempotency key travels in the ``Idempotency-Key`` header. 429 and
    5xx responses are transient; any other 4xx is fatal.
    """

    def __init__(
        self,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.url = url
        self.headers = headers or {}
        self.timeout = timeout
        self._client = client

    async def invoke(
        self, payload: Dict[str, Any], idempotency_key: str
    ) -> CollaboratorResult:
        headers = {**self.headers, "Idempotency-Key": idempotency_key}
        try:
            if self._client is not None:
                response = await self._client.post(
                    self.url, json=payload, headers=headers, timeout=self.timeout
                )
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(self.url, json=payload, headers=headers)
        except httpx.TimeoutException as e:
            raise TransientExecutionFailure(f"timeout calling {self.url}: {e}") from e
        except httpx.TransportError as e:
            raise TransientExecutionFailure(f"network error calling {self.url}: {e}") from e

        status = response.status_code
        if status == 429:
            raise TransientExecutionFailure(f"rate limit: HTTP 429 from {self.url}")
        if status >= 500:
            raise TransientExecutionFailure(f"HTTP {status} from {self.url}: service unavailable")
        if status >= 400:
            raise FatalExecutionFailure(f"validation: HTTP {status} from {self.url}: {response.text}")

        try:
            output = response.json()
        except ValueError:
            output = response.text
        return CollaboratorResult(output=output, metadata={"status_code": status})


_collaborators: Dict[str, Collaborator] = {}


def register_collaborator(kind: str, collaborator: Any) -> Collaborator:
    """Register the collaborator that executes jobs of ``kind``.

    Plain callables are wrapped in :class:`CallableCollaborator`.
    """
    if not hasattr(collaborator, "invoke"):
        if not callable(collaborator):
            raise ConfigError(f"Collaborator for '{kind}' must be callable or have invoke()")
        collaborator = CallableCollaborator(collaborator, name=kind)
    _collaborators[kind] = collaborator
    logger.info(f"Registered collaborator for job kind '{kind}'")
    return collaborator


def collaborator(kind: str) -> Callable[[Handler], Handler]:
    """Decorator form of :func:`register_collaborator`."""

    def decorator(fn: Handler) -> Handler:
        register_collaborator(kind, fn)
        return fn

    return decorator


def get_collaborator(kind: str) -> Optional[Collaborator]:
    return _collaborators.get(kind)


def registered_kinds() -> list[str]:
    return sorted(_collaborators)


def clear_collaborators() -> None:
    _collaborators.clear()
