"""Pipeline module for concurrent fetch + translate."""

from syosetu_translator.pipeline.backoff import BackoffState, RateLimitGate, retry_delay
from syosetu_translator.pipeline.events import EventBus, PipelineEvent
from syosetu_translator.pipeline.streaming import (
    ChapterView,
    PipelineResult,
    PipelineSnapshot,
    RunStatus,
    StreamingPipeline,
)

__all__ = [
    "BackoffState",
    "ChapterView",
    "EventBus",
    "PipelineEvent",
    "PipelineResult",
    "PipelineSnapshot",
    "RateLimitGate",
    "RunStatus",
    "StreamingPipeline",
    "retry_delay",
]
