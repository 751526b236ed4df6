"""
Approval notifications

The engine announces step openings, completions, escalations, delegations
and unroutable steps here. Subscribers decide how (or whether) anybody is
told; a failing subscriber never affects the approval itself.
"""

from enum import Enum
from typing import Callable, Dict, List, Any, Optional
from dataclasses import dataclass, field
from datetime import datetime, timezone
import uuid
import logging
from threading import RLock


logger = logging.getLogger("itsm_approvals.events")


class ApprovalEvent(Enum):
    STEP_OPENED = "approval.step.opened"
    COMPLETED = "approval.completed"
    STEP_ESCALATED = "approval.step.escalated"
    STEP_DELEGATED = "approval.step.delegated"
    NO_ELIGIBLE_APPROVERS = "approval.no_eligible_approvers"


@dataclass
class EventPayload:
    event_type: ApprovalEvent
    instance_id: str
    data: Dict[str, Any]
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'event_id': self.event_id,
            'event_type': self.event_type.value,
            'instance_id': self.instance_id,
            'timestamp': self.timestamp.isoformat(),
            'data': self.data,
        }


Handler = Callable[[EventPayload], Any]


def _name(handler: Handler) -> str:
    return getattr(handler, '__qualname__', repr(handler))


class EventDispatcher:
    """
    In-process publish/subscribe.

    Handlers registered under ``None`` receive every event. Handlers run
    synchronously on the publishing thread after the state change that
    caused the event has been stored.
    """

    def __init__(self):
        self._subscribers: Dict[Optional[ApprovalEvent], List[Handler]] = {}
        self._lock = RLock()

    def subscribe(self, event_type: ApprovalEvent, handler: Handler) -> None:
        with self._lock:
            self._subscribers.setdefault(event_type, []).append(handler)
        logger.debug(f"{_name(handler)} subscribed to {event_type.value}")

    def subscribe_all(self, handler: Handler) -> None:
        with self._lock:
            self._subscribers.setdefault(None, []).append(handler)

    def unsubscribe(self, event_type: ApprovalEvent, handler: Handler) -> None:
        with self._lock:
            handlers = self._subscribers.get(event_type, [])
            if handler in handlers:
                handlers.remove(handler)
                return
        logger.warning(f"{_name(handler)} is not subscribed to {event_type.value}")

    def publish(self, event: EventPayload) -> None:
        with self._lock:
            targets = self._subscribers.get(event.event_type, []) + self._subscribers.get(None, [])

        logger.debug(f"Publishing {event.event_type.value} for instance {event.instance_id} to {len(targets)} handler(s)")
        for handler in targets:
            try:
                handler(event)
            except Exception:
                logger.exception(f"Handler {_name(handler)} failed on {event.event_type.value} "
                                 f"for instance {event.instance_id}")

    def emit(self, event_type: ApprovalEvent, instance_id: str, **data: Any) -> EventPayload:
        """Build a payload from keyword data and publish it"""
        event = EventPayload(event_type=event_type, instance_id=instance_id, data=data)
        self.publish(event)
        return event

    def clear(self) -> None:
        with self._lock:
            self._subscribers = {}

    def get_handler_count(self, event_type: Optional[ApprovalEvent] = None) -> int:
        """Handlers for one event type, or every registered handler when omitted"""
        with self._lock:
            if event_type is not None:
                return len(self._subscribers.get(event_type, []))
            return sum(len(handlers) for handlers in self._subscribers.values())
