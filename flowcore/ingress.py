"""Event ingress: normalizes webhooks, manual commands and timer ticks.

Every trigger becomes a frozen :class:`TriggerEvent` that is recorded in
the store and published on the :class:`EventBus` under its ``type``. The
runtime subscribes the workflow engine for workflow types and a
standalone-job creator for event types that map straight to a job kind.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
from collections import OrderedDict, defaultdict
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

from pydantic import BaseModel, Field

from .config import IngressConfig
from .contracts import TriggerEvent
from .errors import InvalidEvent, InvalidSignature, QueueSaturated, UnsupportedWorkflow
from .monitoring import EventSink, EventType, MonitoringEvent, NullSink
from .persistence import WorkflowRepository

logger = logging.getLogger(__name__)

SIGNATURE_HEADERS = ("x-signature", "x-hub-signature-256")


class IngestResult(BaseModel):
    """What happened to one trigger."""

    event_id: str
    workflow_id: Optional[str] = None
    job_ids: List[str] = Field(default_factory=list)
    duplicate: bool = False


EventHandler = Callable[[TriggerEvent], Awaitable[IngestResult]]


class EventBus:
    """In-process publish/subscribe channel keyed by event type."""

    def __init__(self) -> None:
        self._subscribers: Dict[str, List[EventHandler]] = defaultdict(list)

    def subscribe(self, topic: str, handler: EventHandler) -> None:
        self._subscribers[topic].append(handler)

    def unsubscribe(self, topic: str, handler: EventHandler) -> None:
        handlers = self._subscribers.get(topic, [])
        if handler in handlers:
            handlers.remove(handler)

    def has_subscribers(self, topic: str) -> bool:
        return bool(self._subscribers.get(topic))

    @property
    def topics(self) -> List[str]:
        return sorted(t for t, handlers in self._subscribers.items() if handlers)

    async def publish(self, topic: str, event: TriggerEvent) -> List[IngestResult]:
        """Deliver ``event`` to every subscriber of ``topic`` in order.

        Subscriber errors propagate to the publisher.
        """
        return [await handler(event) for handler in list(self._subscribers.get(topic, []))]


def sign_payload(secret: str, body: bytes) -> str:
    """Hex HMAC-SHA256 of ``body``, as a sender would compute it."""
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def verify_signature(secret: str, body: bytes, signature: Optional[str]) -> bool:
    """Constant-time check of a bare-hex or ``sha256=``-prefixed signature."""
    if not signature:
        return False
    provided = signature.strip()
    if provided.startswith("sha256="):
        provided = provided[len("sha256="):]
    return hmac.compare_digest(sign_payload(secret, body), provided.lower())


class EventIngress:
    """Turns raw triggers into recorded, published events.

    Events rejected with :class:`QueueSaturated` are kept in a pending
    buffer, in arrival order, until :meth:`replay_pending` gets them in.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        bus: Optional[EventBus] = None,
        config: Optional[IngressConfig] = None,
        sink: Optional[EventSink] = None,
    ) -> None:
        self._repository = repository
        self.bus = bus or EventBus()
        self.config = config or IngressConfig()
        self._sink = sink or NullSink()
        self._pending: "OrderedDict[str, TriggerEvent]" = OrderedDict()

    # ------------------------------------------------------------------
    # Normalization
    def webhook_event(
        self, source: str, body: bytes, headers: Mapping[str, str]
    ) -> TriggerEvent:
        """Verify and parse a raw webhook delivery.

        Raises:
            InvalidSignature: a secret is configured for ``source`` and the
                signature header is missing or wrong.
            InvalidEvent: the body is not a JSON object or names no type.
        """
        lowered = {k.lower(): v for k, v in headers.items()}
        secret = self.config.webhook_secrets.get(source)
        if secret is not None:
            signature = next((lowered[h] for h in SIGNATURE_HEADERS if h in lowered), None)
            if not verify_signature(secret, body, signature):
                logger.warning(f"Rejected webhook from '{source}': bad signature")
                raise InvalidSignature(source)

        try:
            data = json.loads(body or b"{}")
        except ValueError as e:
            raise InvalidEvent(f"Webhook body from '{source}' is not valid JSON: {e}") from e
        if not isinstance(data, dict):
            raise InvalidEvent(f"Webhook body from '{source}' must be a JSON object")

        event_type = data.get("type") or lowered.get("x-event-type")
        if not event_type:
            raise InvalidEvent(f"Webhook from '{source}' has no event type")
        if "payload" in data:
            payload = data["payload"]
        else:
            payload = {k: v for k, v in data.items() if k not in ("id", "type")}
        if not isinstance(payload, dict):
            raise InvalidEvent(f"Webhook payload from '{source}' must be an object")

        event_id = data.get("id") or lowered.get("idempotency-key")
        return self._build(source, event_type, payload, event_id)

    def manual_event(
        self,
        source: str,
        type: str,
        payload: Optional[Dict[str, Any]] = None,
        event_id: Optional[str] = None,
    ) -> TriggerEvent:
        return self._build(source, type, payload or {}, event_id)

    @staticmethod
    def _build(
        source: str, type: str, payload: Dict[str, Any], event_id: Optional[Any]
    ) -> TriggerEvent:
        fields: Dict[str, Any] = {"source": source, "type": type, "payload": payload}
        if event_id:
            fields["id"] = str(event_id)
        return TriggerEvent(**fields)

    # ------------------------------------------------------------------
    # Intake
    async def webhook(
        self, source: str, body: bytes, headers: Mapping[str, str]
    ) -> IngestResult:
        return await self.ingest(self.webhook_event(source, body, headers))

    async def manual(
        self,
        source: str,
        type: str,
        payload: Optional[Dict[str, Any]] = None,
        event_id: Optional[str] = None,
    ) -> IngestResult:
        return await self.ingest(self.manual_event(source, type, payload, event_id))

    async def scheduled(
        self, name: str, type: str, payload: Dict[str, Any], tick: int
    ) -> IngestResult:
        """Ingest one timer tick; the id makes each tick fire at most once."""
        event = self._build(f"schedule:{name}", type, dict(payload), f"schedule:{name}:{tick}")
        return await self.ingest(event)

    async def ingest(self, event: TriggerEvent) -> IngestResult:
        """Record ``event`` and hand it to its subscribers.

        Re-delivering an event id is safe: the store keeps the first copy
        and every subscriber is idempotent on the id.

        Raises:
            UnsupportedWorkflow: nothing handles ``event.type``.
            QueueSaturated: the work could not be queued; the event is kept
                for :meth:`replay_pending`.
        """
        if not self.bus.has_subscribers(event.type):
            logger.warning(f"No handler for event type '{event.type}' (event {event.id})")
            raise UnsupportedWorkflow(event.type)

        is_new = await self._repository.record_trigger(event)
        if is_new:
            logger.info(f"Received event {event.id} type={event.type} source={event.source}")
        else:
            stored = await self._repository.get_trigger(event.id)
            event = stored or event
            logger.info(f"Event {event.id} delivered again")
        self._sink.publish(
            MonitoringEvent(
                type=EventType.TRIGGER_RECEIVED,
                data={
                    "event_id": event.id,
                    "type": event.type,
                    "source": event.source,
                    "duplicate": not is_new,
                },
            )
        )

        try:
            results = await self.bus.publish(event.type, event)
        except QueueSaturated:
            if event.id not in self._pending:
                self._pending[event.id] = event
                logger.warning(
                    f"Queue saturated; holding event {event.id} for replay "
                    f"({len(self._pending)} pending)"
                )
            raise

        self._pending.pop(event.id, None)
        merged = IngestResult(event_id=event.id)
        for result in results:
            merged.workflow_id = merged.workflow_id or result.workflow_id
            merged.job_ids.extend(result.job_ids)
        # A replay that finally queued held work is not a duplicate.
        merged.duplicate = not is_new and not any(
            r.job_ids and not r.duplicate for r in results
        )
        return merged

    @property
    def pending(self) -> List[TriggerEvent]:
        return list(self._pending.values())

    async def replay_pending(self) -> int:
        """Retry held events oldest first; stops at the first saturation."""
        replayed = 0
        for event in list(self._pending.values()):
            try:
                await self.ingest(event)
            except QueueSaturated:
                break
            except UnsupportedWorkflow:
                logger.error(f"Dropping held event {event.id}: no handler for '{event.type}'")
                self._pending.pop(event.id, None)
                continue
            replayed += 1
        if replayed:
            logger.info(f"Replayed {replayed} held event(s)")
        return replayed
