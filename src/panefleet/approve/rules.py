"""Rule matching for approval prompts."""

from __future__ import annotations

import fnmatch
import logging
import re
import time
from functools import lru_cache
from typing import Any, Iterable, Mapping

from .models import ACTION_PRECEDENCE, ApprovalAction, Decision, TrustRule

logger = logging.getLogger(__name__)

MAX_MATCH_INPUT = 8192
MATCH_TIME_LIMIT = 0.1

SHELL_METACHARACTERS = re.compile(r"(&&|\||;|`|\$\()")
_LEADING_PATH = re.compile(r"^/[\w./-]*/(?=\w)")

# Keys holding the argument a rule's pattern is matched against, by tool.
PRIMARY_ARGUMENT_KEYS: dict[str, tuple[str, ...]] = {
    "Bash": ("command",),
    "WebFetch": ("url",),
    "WebSearch": ("query",),
    "Glob": ("pattern",),
    "Grep": ("pattern",),
}
DEFAULT_ARGUMENT_KEYS = ("file_path", "path", "notebook_path")


def normalize_command(command: str) -> str:
    """Trim, collapse whitespace and strip an absolute path from the binary."""

    normalized = " ".join(command.split())
    return _LEADING_PATH.sub("", normalized)


def has_shell_metacharacters(command: str) -> bool:
    return bool(SHELL_METACHARACTERS.search(command))


def primary_argument(tool_name: str, tool_input: Mapping[str, Any]) -> str | None:
    for key in PRIMARY_ARGUMENT_KEYS.get(tool_name, DEFAULT_ARGUMENT_KEYS):
        value = tool_input.get(key)
        if isinstance(value, str):
            return normalize_command(value) if tool_name == "Bash" else value
    return None


@lru_cache(maxsize=512)
def _compile(pattern: str) -> re.Pattern[str] | None:
    try:
        return re.compile(pattern)
    except re.error:
        logger.warning("Invalid rule pattern; using substring match", extra={"pattern": pattern})
        return None


def pattern_matches(pattern: str, text: str, *, full: bool = False) -> bool:
    """Match ``pattern`` against ``text`` with input and time limits.

    Oversized input never matches. A match that takes longer than
    ``MATCH_TIME_LIMIT`` seconds counts as a non-match.
    """

    if len(text) > MAX_MATCH_INPUT:
        return False
    compiled = _compile(pattern)
    if compiled is None:
        return text == pattern if full else pattern in text

    started = time.monotonic()
    matched = compiled.fullmatch(text) if full else compiled.search(text)
    elapsed = time.monotonic() - started
    if elapsed > MATCH_TIME_LIMIT:
        logger.warning(
            "Rule pattern too slow; treating as non-match",
            extra={"pattern": pattern, "elapsed": round(elapsed, 3)},
        )
        return False
    return matched is not None


def _is_bash_rule(rule: TrustRule) -> bool:
    return fnmatch.fnmatchcase("Bash", rule.tool_pattern)


def effective_rules(rules: Iterable[TrustRule]) -> list[TrustRule]:
    """Drop bare ``Bash`` allows once any layer configures command patterns.

    Applies to the merged rules of every layer.
    """

    rules = list(rules)
    has_bash_patterns = any(rule.argument_pattern is not None and _is_bash_rule(rule) for rule in rules)
    if not has_bash_patterns:
        return rules
    return [
        rule
        for rule in rules
        if not (rule.action == ApprovalAction.ALLOW and rule.scope == "Bash")
    ]


def rule_matches(rule: TrustRule, tool_name: str | None, tool_input: Mapping[str, Any]) -> bool:
    if not tool_name or not fnmatch.fnmatchcase(tool_name, rule.tool_pattern):
        return False
    argument_pattern = rule.argument_pattern
    if argument_pattern is None:
        if rule.action == ApprovalAction.ALLOW and tool_name == "Bash":
            # A bare allow never covers an unknown or compound command.
            command = primary_argument(tool_name, tool_input)
            return command is not None and not has_shell_metacharacters(command)
        return True
    argument = primary_argument(tool_name, tool_input)
    if argument is None:
        return False
    full = (
        rule.action == ApprovalAction.ALLOW
        and tool_name == "Bash"
        and has_shell_metacharacters(argument)
    )
    return pattern_matches(argument_pattern, argument, full=full)


def order_rules(rules: Iterable[TrustRule]) -> list[TrustRule]:
    """Most specific layer first; within a layer deny, then ask, then allow."""

    return sorted(rules, key=lambda rule: (-rule.layer, ACTION_PRECEDENCE[rule.action]))


def evaluate_rules(
    rules: Iterable[TrustRule], tool_name: str | None, tool_input: Mapping[str, Any] | None = None
) -> Decision:
    """First matching rule wins; no match asks."""

    tool_input = tool_input or {}
    for rule in order_rules(effective_rules(rules)):
        if rule_matches(rule, tool_name, tool_input):
            return Decision(
                action=rule.action,
                rule=rule,
                reason=f"Matched rule '{rule.id}' ({rule.scope}) in layer {rule.layer}",
            )
    subject = tool_name or "unknown tool"
    argument = primary_argument(tool_name, tool_input) if tool_name else None
    if argument:
        subject = f"{subject}: {argument}"
    return Decision(action=ApprovalAction.ASK, rule=None, reason=f"No rule covers {subject}")


__all__ = [
    "MAX_MATCH_INPUT",
    "effective_rules",
    "evaluate_rules",
    "has_shell_metacharacters",
    "normalize_command",
    "order_rules",
    "pattern_matches",
    "primary_argument",
    "rule_matches",
]
