"""Layered trust policy and the auto-approve engine."""

from .audit import AuditSink, JsonlAuditLog
from .engine import AutoApproveEngine, RulesProvider
from .models import (
    ApprovalAction,
    AuditEntry,
    Decision,
    GlobalPolicyDocument,
    PolicyDocument,
    TrustRule,
)
from .policy import PolicyLoadError, PolicyLoader, parse_task_policy
from .rules import effective_rules, evaluate_rules, normalize_command

__all__ = [
    "ApprovalAction",
    "AuditEntry",
    "AuditSink",
    "AutoApproveEngine",
    "Decision",
    "GlobalPolicyDocument",
    "JsonlAuditLog",
    "PolicyDocument",
    "PolicyLoadError",
    "PolicyLoader",
    "RulesProvider",
    "TrustRule",
    "effective_rules",
    "evaluate_rules",
    "normalize_command",
    "parse_task_policy",
]
