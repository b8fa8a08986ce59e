"""Event streams and per-worker live state."""

from .aggregator import EventAggregator, EventObserver, StatusListener
from .models import STATUS_BY_KIND, Event, EventKind, PendingPrompt, WorkerStateView
from .patterns import PromptMatch, detect_approval_prompt
from .source import EventSource, EventStreamUnavailable, JsonlEventSource

__all__ = [
    "Event",
    "EventAggregator",
    "EventKind",
    "EventObserver",
    "EventSource",
    "EventStreamUnavailable",
    "JsonlEventSource",
    "PendingPrompt",
    "PromptMatch",
    "STATUS_BY_KIND",
    "StatusListener",
    "WorkerStateView",
    "detect_approval_prompt",
]
