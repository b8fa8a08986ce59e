"""Approval prompt detection in captured pane output."""

from __future__ import annotations

import re
from dataclasses import dataclass


def _tool_prompt(words: str) -> re.Pattern[str]:
    return re.compile(rf"Allow (?:{words})\b.*\?", re.IGNORECASE)


# The argument is taken only from a prompt that ends the line, either
# ``Tool(argument)?`` up to the last ``)?`` or ``Tool argument?`` without
# further question marks. Anything else yields no argument.
_ARGUMENT_FORMS = (
    re.compile(r"^Allow \w+\((?P<argument>.*)\)\s*\?\s*$", re.IGNORECASE),
    re.compile(r"^Allow \w+:?\s+(?P<argument>[^?()]+)\?\s*$", re.IGNORECASE),
)


def _prompt_argument(prompt: str) -> str | None:
    for form in _ARGUMENT_FORMS:
        match = form.match(prompt)
        if match is not None:
            return match.group("argument").strip() or None
    return None


# (prompt class, pattern, tool implied by the class, tool_input key for the argument)
APPROVAL_PROMPT_PATTERNS: tuple[tuple[str, re.Pattern[str], str | None, str | None], ...] = (
    ("bash_permission", _tool_prompt("Bash|shell"), "Bash", "command"),
    ("edit_permission", _tool_prompt("Edit|editing"), "Edit", "file_path"),
    ("write_permission", _tool_prompt("Write|writing"), "Write", "file_path"),
    ("read_permission", _tool_prompt("Read|reading"), "Read", "file_path"),
    ("mcp_permission", re.compile(r"Allow (?:MCP|tool)\b.*\?", re.IGNORECASE), None, None),
    ("run_prompt", re.compile(r"Would you like to run"), None, None),
    ("sandbox_escape", re.compile(r"Do you want to .* outside"), None, None),
    ("allow_to_run", re.compile(r"Allow .* to run"), None, None),
    (
        "generic_permission",
        re.compile(r"^\s*(?:Allow|Confirm|Approve)\s+(?:this|the|once|always)?\s*(?:\w+)?\s*\?", re.IGNORECASE),
        None,
        None,
    ),
)

# Only the tail of the capture matters; older prompts have already scrolled past.
PROMPT_WINDOW_LINES = 15


@dataclass(slots=True)
class PromptMatch:
    prompt_class: str
    tool_name: str | None
    text: str
    tool_input: dict[str, str]


def detect_approval_prompt(output: str) -> PromptMatch | None:
    """Return the most recent approval prompt near the end of ``output``."""

    lines = [line for line in output.splitlines() if line.strip()]
    for line in reversed(lines[-PROMPT_WINDOW_LINES:]):
        for prompt_class, pattern, tool_name, argument_key in APPROVAL_PROMPT_PATTERNS:
            match = pattern.search(line)
            if match is None:
                continue
            tool_input: dict[str, str] = {}
            if argument_key:
                argument = _prompt_argument(line[match.start():].strip())
                if argument is not None:
                    tool_input[argument_key] = argument
            return PromptMatch(
                prompt_class=prompt_class,
                tool_name=tool_name,
                text=line.strip(),
                tool_input=tool_input,
            )
    return None


__all__ = ["APPROVAL_PROMPT_PATTERNS", "PROMPT_WINDOW_LINES", "PromptMatch", "detect_approval_prompt"]
