"""Persistent activity storage."""

from .activity import AUDIT_EVENT_TYPE, ActivityLog, ActivityRecord, ChromaUnavailableError

__all__ = ["AUDIT_EVENT_TYPE", "ActivityLog", "ActivityRecord", "ChromaUnavailableError"]
