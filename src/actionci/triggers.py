# triggers.py
from __future__ import annotations

import re
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Dict, List, Mapping, Optional, Sequence

from .errors import SchemaError
from .model import InputSpec, Trigger, TriggerKind, WorkflowDocument

DEFAULT_PULL_REQUEST_TYPES = ("opened", "synchronize", "reopened")


@dataclass(frozen=True)
class Event:
    """
    The event a run reacts to.

    ref:           refs/heads/<branch> or refs/tags/<tag>
    base_ref:      target branch of a pull request
    changed_files: None when unknown (path filters then pass)
    schedule:      the cron string that fired, for schedule events
    """
    name: str
    ref: str = "refs/heads/main"
    sha: str = ""
    actor: str = ""
    base_ref: Optional[str] = None
    action: Optional[str] = None
    changed_files: Optional[List[str]] = None
    schedule: Optional[str] = None
    inputs: Dict[str, Any] = field(default_factory=dict)
    payload: Dict[str, Any] = field(default_factory=dict)

    @property
    def ref_name(self) -> str:
        for prefix in ("refs/heads/", "refs/tags/"):
            if self.ref.startswith(prefix):
                return self.ref[len(prefix):]
        return self.ref

    @property
    def ref_type(self) -> str:
        return "tag" if self.ref.startswith("refs/tags/") else "branch"


# ---------------------------------------------------------------------
# Filter patterns
# ---------------------------------------------------------------------
#   *   any characters except '/'
#   **  any characters
#   ?   zero or one of the preceding character
#   +   one or more of the preceding character
#   []  character class
#   !   (leading) negates a pattern; patterns apply in order
# ---------------------------------------------------------------------

@lru_cache(maxsize=512)
def _pattern_regex(pattern: str) -> re.Pattern:
    out: List[str] = []
    i = 0
    while i < len(pattern):
        ch = pattern[i]
        if ch == "*":
            if pattern.startswith("**", i):
                out.append(".*")
                i += 2
                continue
            out.append("[^/]*")
        elif ch in "?+":
            out.append(ch if out else re.escape(ch))
        elif ch == "[":
            end = pattern.find("]", i)
            if end == -1:
                out.append(re.escape(ch))
            else:
                out.append(pattern[i:end + 1])
                i = end + 1
                continue
        elif ch == "\\" and i + 1 < len(pattern):
            out.append(re.escape(pattern[i + 1]))
            i += 2
            continue
        else:
            out.append(re.escape(ch))
        i += 1
    return re.compile("".join(out) + r"\Z")


def pattern_matches(pattern: str, value: str) -> bool:
    return _pattern_regex(pattern).match(value) is not None


def filter_matches(patterns: Sequence[str], value: str) -> bool:
    """Apply patterns in order; a later `!pattern` can un-match."""
    matched = False
    for pat in patterns:
        if pat.startswith("!"):
            if matched and pattern_matches(pat[1:], value):
                matched = False
        elif not matched and pattern_matches(pat, value):
            matched = True
    return matched


def _ref_allowed(include: Optional[List[str]], ignore: Optional[List[str]], name: str) -> bool:
    if include is not None:
        return filter_matches(include, name)
    if ignore is not None:
        return not filter_matches(ignore, name)
    return True


def _paths_allowed(trigger: Trigger, changed: Optional[List[str]]) -> bool:
    if changed is None:
        return True
    if trigger.paths is not None:
        return any(filter_matches(trigger.paths, f) for f in changed)
    if trigger.paths_ignore is not None:
        return any(not filter_matches(trigger.paths_ignore, f) for f in changed)
    return True


def trigger_matches(trigger: Trigger, event: Event) -> bool:
    if trigger.kind.value != event.name:
        return False

    if trigger.kind == TriggerKind.PUSH:
        branch_filters = trigger.branches is not None or trigger.branches_ignore is not None
        tag_filters = trigger.tags is not None or trigger.tags_ignore is not None
        if event.ref_type == "tag":
            if tag_filters:
                ok = _ref_allowed(trigger.tags, trigger.tags_ignore, event.ref_name)
            else:
                ok = not branch_filters
        else:
            if branch_filters:
                ok = _ref_allowed(trigger.branches, trigger.branches_ignore, event.ref_name)
            else:
                ok = not tag_filters
        return ok and _paths_allowed(trigger, event.changed_files)

    if trigger.kind == TriggerKind.PULL_REQUEST:
        types = trigger.types or list(DEFAULT_PULL_REQUEST_TYPES)
        if (event.action or "opened") not in types:
            return False
        base = event.base_ref or event.ref_name
        if not _ref_allowed(trigger.branches, trigger.branches_ignore, base):
            return False
        return _paths_allowed(trigger, event.changed_files)

    if trigger.kind == TriggerKind.SCHEDULE:
        return event.schedule is None or event.schedule in trigger.crons

    return True


def matching_trigger(document: WorkflowDocument, event: Event) -> Optional[Trigger]:
    for trigger in document.triggers:
        if trigger_matches(trigger, event):
            return trigger
    return None


# ---------------------------------------------------------------------
# Inputs
# ---------------------------------------------------------------------

_TRUE = {"true", "yes", "1", "on"}
_FALSE = {"false", "no", "0", "off", ""}


def _coerce_input(spec: InputSpec, value: Any) -> Any:
    if spec.type == "boolean":
        if isinstance(value, bool):
            return value
        text = str(value).strip().lower()
        if text in _TRUE:
            return True
        if text in _FALSE:
            return False
        raise SchemaError(f"input '{spec.name}' expects a boolean, got {value!r}")
    if spec.type == "number":
        if isinstance(value, bool):
            raise SchemaError(f"input '{spec.name}' expects a number, got {value!r}")
        try:
            number = float(value)
        except (TypeError, ValueError):
            raise SchemaError(f"input '{spec.name}' expects a number, got {value!r}")
        return int(number) if number.is_integer() else number
    value = "" if value is None else str(value)
    if spec.type == "choice" and spec.options and value not in spec.options:
        raise SchemaError(
            f"input '{spec.name}' must be one of {list(spec.options)}, got {value!r}",
        )
    return value


def resolve_inputs(trigger: Optional[Trigger], provided: Mapping[str, Any]) -> Dict[str, Any]:
    """
    Apply declared defaults and types to the inputs supplied with an event.
    Undeclared inputs are rejected.
    """
    if trigger is None or trigger.kind not in (TriggerKind.WORKFLOW_DISPATCH, TriggerKind.WORKFLOW_CALL):
        return dict(provided)

    unknown = sorted(set(provided) - set(trigger.inputs))
    if unknown:
        raise SchemaError(f"unexpected inputs: {unknown}", details={"declared": sorted(trigger.inputs)})

    resolved: Dict[str, Any] = {}
    for name, spec in trigger.inputs.items():
        if name in provided:
            resolved[name] = _coerce_input(spec, provided[name])
        elif spec.default is not None:
            resolved[name] = _coerce_input(spec, spec.default)
        elif spec.required:
            raise SchemaError(f"required input '{name}' was not provided")
        elif spec.type == "boolean":
            resolved[name] = False
        elif spec.type != "number":
            resolved[name] = ""
    return resolved


def check_required_secrets(trigger: Optional[Trigger], secret_names: Sequence[str]) -> None:
    if trigger is None or trigger.kind != TriggerKind.WORKFLOW_CALL:
        return
    missing = sorted(n for n, required in trigger.secrets.items() if required and n not in secret_names)
    if missing:
        raise SchemaError(f"required secrets not provided: {missing}")


# ---------------------------------------------------------------------
# Cron
# ---------------------------------------------------------------------

_CRON_FIELDS = (
    ("minute", 0, 59),
    ("hour", 0, 23),
    ("day of month", 1, 31),
    ("month", 1, 12),
    ("day of week", 0, 6),
)
_MONTHS = "jan feb mar apr may jun jul aug sep oct nov dec".split()
_DAYS = "sun mon tue wed thu fri sat".split()


def _cron_value(text: str, idx: int) -> int:
    lowered = text.lower()
    if idx == 3 and lowered in _MONTHS:
        return _MONTHS.index(lowered) + 1
    if idx == 4 and lowered in _DAYS:
        return _DAYS.index(lowered)
    if not text.isdigit():
        raise ValueError(text)
    return int(text)


def validate_cron(expr: str) -> None:
    """Validate a 5-field POSIX cron string; raises SchemaError."""
    fields = str(expr).split()
    if len(fields) != 5:
        raise SchemaError(f"cron {expr!r} must have 5 fields, got {len(fields)}")
    for idx, (text, (label, lo, hi)) in enumerate(zip(fields, _CRON_FIELDS)):
        for part in text.split(","):
            base, _, step = part.partition("/")
            try:
                if step and (not step.isdigit() or int(step) == 0):
                    raise ValueError(step)
                if base == "*":
                    continue
                start, _, end = base.partition("-")
                values = [_cron_value(start, idx)] + ([_cron_value(end, idx)] if end else [])
                if any(v < lo or v > hi for v in values):
                    raise ValueError(base)
                if end and values[0] > values[1]:
                    raise ValueError(base)
            except ValueError:
                raise SchemaError(f"cron {expr!r}: invalid {label} field {text!r}")
