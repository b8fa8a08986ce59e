"""Trust rules, policy documents and approval decisions."""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..registry.models import utcnow

SCOPE_PATTERN = re.compile(r"^(?P<tool>[^()]+?)\s*(?:\((?P<argument>.*)\))?$", re.DOTALL)


class ApprovalAction(str, Enum):
    ALLOW = "allow"
    DENY = "deny"
    ASK = "ask"


# Within one layer, restrictive actions are checked first.
ACTION_PRECEDENCE = {ApprovalAction.DENY: 0, ApprovalAction.ASK: 1, ApprovalAction.ALLOW: 2}


def split_scope(scope: str) -> tuple[str, str | None]:
    """Split ``Tool(argument-pattern)`` into its tool glob and argument pattern."""

    match = SCOPE_PATTERN.match(scope.strip())
    if match is None:
        raise ValueError(f"Invalid rule scope '{scope}'")
    argument = match.group("argument")
    return match.group("tool").strip(), argument if argument else None


class TrustRule(BaseModel):
    """One policy entry: which prompts it covers and what to do about them."""

    model_config = ConfigDict(frozen=True)

    id: str
    scope: str = Field(..., description="Tool glob, optionally qualified as Tool(regex).")
    action: ApprovalAction
    layer: int = Field(default=0, description="Priority tier; higher layers are more specific.")
    source: str | None = Field(default=None, description="Where the rule was loaded from.")

    @field_validator("scope")
    @classmethod
    def _check_scope(cls, value: str) -> str:
        split_scope(value)
        return value.strip()

    @property
    def tool_pattern(self) -> str:
        return split_scope(self.scope)[0]

    @property
    def argument_pattern(self) -> str | None:
        return split_scope(self.scope)[1]


class RuleSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str | None = None
    scope: str
    action: ApprovalAction


class PolicyDocument(BaseModel):
    """One YAML policy layer."""

    model_config = ConfigDict(extra="forbid")

    inherit: Literal["global", "none"] | None = None
    allow: list[str] = Field(default_factory=list)
    deny: list[str] = Field(default_factory=list)
    ask: list[str] = Field(default_factory=list)
    bash_allow_patterns: list[str] = Field(default_factory=list)
    bash_deny_patterns: list[str] = Field(default_factory=list)
    rules: list[RuleSpec] = Field(default_factory=list)

    def to_rules(self, *, layer: int, label: str, source: str | None = None) -> list[TrustRule]:
        """Flatten the document into rules, deny first."""

        specs: list[tuple[str | None, str, ApprovalAction]] = []
        for tool in self.deny:
            specs.append((None, tool, ApprovalAction.DENY))
        for tool in self.ask:
            specs.append((None, tool, ApprovalAction.ASK))
        for tool in self.allow:
            specs.append((None, tool, ApprovalAction.ALLOW))
        for pattern in self.bash_deny_patterns:
            specs.append((None, f"Bash({pattern})", ApprovalAction.DENY))
        for pattern in self.bash_allow_patterns:
            specs.append((None, f"Bash({pattern})", ApprovalAction.ALLOW))
        for rule in self.rules:
            specs.append((rule.id, rule.scope, rule.action))

        return [
            TrustRule(
                id=rule_id or f"{label}:{action.value}:{scope}",
                scope=scope,
                action=action,
                layer=layer,
                source=source,
            )
            for rule_id, scope, action in specs
        ]


class GlobalPolicyDocument(PolicyDocument):
    """The global policy file: defaults plus per-repository overrides."""

    defaults: PolicyDocument | None = None
    repos: dict[str, PolicyDocument] = Field(default_factory=dict)


@dataclass(slots=True)
class Decision:
    action: ApprovalAction
    rule: TrustRule | None
    reason: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "action": self.action.value,
            "rule": self.rule.model_dump(mode="json") if self.rule else None,
            "reason": self.reason,
        }


class AuditEntry(BaseModel):
    """Persisted record of one approval decision."""

    worker_id: str
    action: ApprovalAction
    reason: str
    rule_id: str | None = None
    tool_name: str | None = None
    pane_address: str | None = None
    prompt: str | None = None
    timestamp: datetime = Field(default_factory=utcnow)


__all__ = [
    "ACTION_PRECEDENCE",
    "ApprovalAction",
    "AuditEntry",
    "Decision",
    "GlobalPolicyDocument",
    "PolicyDocument",
    "RuleSpec",
    "TrustRule",
    "split_scope",
]
