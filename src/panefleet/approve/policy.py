"""Layered trust policy loading."""

from __future__ import annotations

import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .models import GlobalPolicyDocument, PolicyDocument, TrustRule
from .rules import effective_rules

GLOBAL_LAYER = 0
GLOBAL_REPO_LAYER = 1
REPO_LAYER = 2
TASK_LAYER = 3

TASK_SECTION_HEADING = re.compile(r"^##\s+Auto-Approve\s*$", re.MULTILINE)
_NEXT_HEADING = re.compile(r"^#{1,2}\s+", re.MULTILINE)
_TASK_ENTRY = re.compile(r"^(?P<key>[\w-]+):\s*(?P<value>.+)$")


class PolicyLoadError(RuntimeError):
    """Raised when one or more policy files cannot be parsed."""


def parse_task_policy(markdown: str) -> PolicyDocument:
    """Read the ``## Auto-Approve`` section of a task file.

    Entries are list items: ``- allow: Tool``, ``- deny: Tool``,
    ``- ask: Tool``, ``- bash: "pattern"`` and ``- deny-bash: "pattern"``.
    """

    document = PolicyDocument()
    heading = TASK_SECTION_HEADING.search(markdown)
    if heading is None:
        return document

    body = markdown[heading.end():]
    next_heading = _NEXT_HEADING.search(body)
    if next_heading is not None:
        body = body[: next_heading.start()]

    for line in body.splitlines():
        stripped = line.strip()
        if not stripped.startswith("-"):
            continue
        entry = _TASK_ENTRY.match(stripped[1:].strip())
        if entry is None:
            continue
        key = entry.group("key").lower()
        value = entry.group("value").strip().strip("\"'")
        if not value:
            continue
        if key == "bash":
            document.bash_allow_patterns.append(value)
        elif key == "deny-bash":
            document.bash_deny_patterns.append(value)
        elif key in ("allow", "deny", "ask"):
            getattr(document, key).append(value)
    return document


def _matching_repo_override(document: GlobalPolicyDocument, repo_path: Path) -> PolicyDocument | None:
    """Longest configured path that equals or contains ``repo_path``."""

    best: tuple[int, PolicyDocument] | None = None
    for configured, override in document.repos.items():
        base = Path(configured).expanduser()
        if repo_path == base or base in repo_path.parents:
            depth = len(base.parts)
            if best is None or depth > best[0]:
                best = (depth, override)
    return best[1] if best else None


class PolicyLoader:
    """Builds the rule list for a worker from up to four layers.

    Layer 0 is the global file, layer 1 its ``repos:`` entry for the worker's
    repository, layer 2 the repository's own policy file and layer 3 the
    task file's ``## Auto-Approve`` section. A repository file replaces
    layers 0 and 1 unless it declares ``inherit: global``.
    """

    def __init__(self, global_path: Path | None, *, repo_dirname: str = ".panefleet") -> None:
        self._global_path = Path(global_path) if global_path else None
        self._repo_dirname = repo_dirname

    def repo_policy_path(self, repo_path: Path) -> Path:
        return Path(repo_path) / self._repo_dirname / "auto-approve.yaml"

    def _read_yaml(self, path: Path, errors: list[str]) -> dict[str, Any] | None:
        if not path.is_file():
            return None
        try:
            document = yaml.safe_load(path.read_text(encoding="utf-8"))
        except (OSError, yaml.YAMLError) as exc:
            errors.append(f"Failed to read policy {path}: {exc}")
            return None
        if document is None:
            return None
        if not isinstance(document, dict):
            errors.append(f"Policy {path} must be a mapping")
            return None
        return document

    def load(
        self,
        repo_path: Path | None = None,
        *,
        task_file: Path | None = None,
    ) -> list[TrustRule]:
        errors: list[str] = []
        inherited: list[TrustRule] = []

        if self._global_path is not None:
            raw = self._read_yaml(self._global_path, errors)
            if raw is not None:
                try:
                    document = GlobalPolicyDocument.model_validate(raw)
                except ValidationError as exc:
                    errors.append(f"Policy validation error in {self._global_path}: {exc}")
                else:
                    source = str(self._global_path)
                    inherited.extend(document.to_rules(layer=GLOBAL_LAYER, label="global", source=source))
                    if document.defaults is not None:
                        inherited.extend(
                            document.defaults.to_rules(layer=GLOBAL_LAYER, label="global", source=source)
                        )
                    if repo_path is not None:
                        override = _matching_repo_override(document, Path(repo_path).expanduser())
                        if override is not None:
                            inherited.extend(
                                override.to_rules(layer=GLOBAL_REPO_LAYER, label="global-repo", source=source)
                            )

        rules = inherited
        if repo_path is not None:
            path = self.repo_policy_path(Path(repo_path))
            raw = self._read_yaml(path, errors)
            if raw is not None:
                try:
                    document = PolicyDocument.model_validate(raw)
                except ValidationError as exc:
                    errors.append(f"Policy validation error in {path}: {exc}")
                else:
                    if document.inherit != "global":
                        rules = []
                    rules = rules + document.to_rules(layer=REPO_LAYER, label="repo", source=str(path))

        if task_file is not None:
            try:
                markdown = Path(task_file).read_text(encoding="utf-8")
            except OSError as exc:
                errors.append(f"Failed to read task file {task_file}: {exc}")
            else:
                rules = rules + parse_task_policy(markdown).to_rules(
                    layer=TASK_LAYER, label="task", source=str(task_file)
                )

        if errors:
            raise PolicyLoadError("; ".join(errors))
        return effective_rules(rules)


__all__ = [
    "GLOBAL_LAYER",
    "GLOBAL_REPO_LAYER",
    "PolicyLoadError",
    "PolicyLoader",
    "REPO_LAYER",
    "TASK_LAYER",
    "parse_task_policy",
]
