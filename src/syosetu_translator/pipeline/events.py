"""Event pub/sub for pipeline progress.

Lets a display layer react to chapter transitions without the pipeline
knowing how they are rendered.
"""

import time
import uuid
from dataclasses import dataclass, field
from typing import Callable

import structlog

logger = structlog.get_logger()


@dataclass
class PipelineEvent:
    """A single pipeline event."""

    type: str
    data: dict = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {"type": self.type, "data": self.data, "timestamp": self.timestamp}


class EventBus:
    """Simple synchronous event bus.

    Subscribers run in the emitter's task and must not block.
    """

    def __init__(self) -> None:
        self._subscribers: dict[str, Callable[[PipelineEvent], None]] = {}

    def subscribe(self, callback: Callable[[PipelineEvent], None]) -> str:
        """Register a callback. Returns subscription ID for unsubscribe."""
        sub_id = str(uuid.uuid4())
        self._subscribers[sub_id] = callback
        return sub_id

    def unsubscribe(self, sub_id: str) -> None:
        self._subscribers.pop(sub_id, None)

    def emit(self, event_type: str, **data) -> PipelineEvent:
        """Send an event to all subscribers."""
        event = PipelineEvent(type=event_type, data=data)
        for sub_id, callback in list(self._subscribers.items()):
            try:
                callback(event)
            except Exception as e:
                # A broken display must not stop the pipeline
                logger.warning("event_subscriber_error", subscriber=sub_id, error=str(e))
        return event
