# triggers.py
from __future__ import annotations

import re
from fnmatch import fnmatch
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from .errors import MalformedTriggerRule
from .model import Event, EventKind, TriggerRule

# minute hour day-of-month month day-of-week
_CRON_FIELD = re.compile(r"^[0-9A-Za-z*/,\-?]+$")

_KNOWN_ON_KEYS = {"push", "pull_request", "schedule", "workflow_dispatch", "workflow_call", "paths"}


def normalize_cron(expr: str) -> str:
    return " ".join(expr.split())


def _matches_any(value: str, patterns: Iterable[str]) -> bool:
    return any(fnmatch(value, p) for p in patterns)


# ----------------------------------------------------------------------
# Rule validation
# ----------------------------------------------------------------------

def validate_rule(name: str, rule: TriggerRule) -> None:
    """Raise MalformedTriggerRule if `rule` cannot be evaluated."""
    if not isinstance(rule, TriggerRule):
        raise MalformedTriggerRule(name, f"expected a TriggerRule, got {type(rule).__name__}")

    if rule.push_branches is not None and not rule.push_branches:
        raise MalformedTriggerRule(name, "push trigger needs at least one branch pattern")

    for field_name in ("push_branches", "pull_request_branches", "paths"):
        for pattern in getattr(rule, field_name) or ():
            if not isinstance(pattern, str) or not pattern.strip():
                raise MalformedTriggerRule(
                    name,
                    f"{field_name} entries must be non-empty strings",
                    value=repr(pattern),
                )

    for expr in rule.schedules:
        if not isinstance(expr, str):
            raise MalformedTriggerRule(name, "cron expressions must be strings", value=repr(expr))
        fields = expr.split()
        if len(fields) != 5 or not all(_CRON_FIELD.match(f) for f in fields):
            raise MalformedTriggerRule(
                name,
                f"invalid cron expression {expr!r} (expected 5 fields)",
                cron=expr,
            )


# ----------------------------------------------------------------------
# Matching
# ----------------------------------------------------------------------

def rule_matches(rule: TriggerRule, event: Event) -> bool:
    """Does `event` start a workflow guarded by `rule`? Assumes a validated rule."""
    if event.kind is EventKind.WORKFLOW_DISPATCH:
        return rule.workflow_dispatch

    if event.kind is EventKind.SCHEDULE:
        fired = normalize_cron(event.cron_expr or "")
        return any(normalize_cron(expr) == fired for expr in rule.schedules)

    if event.kind is EventKind.PUSH:
        if rule.push_branches is None or not _matches_any(event.branch, rule.push_branches):
            return False
    elif event.kind is EventKind.PULL_REQUEST:
        if not rule.pull_request:
            return False
        # event.branch is the PR's target branch
        if rule.pull_request_branches and not _matches_any(event.branch, rule.pull_request_branches):
            return False

    # path filter only applies to code events, and only when we know the diff
    if rule.paths and event.changed_files is not None:
        return any(_matches_any(f, rule.paths) for f in event.changed_files)
    return True


def evaluate_triggers(event: Event, rules: Mapping[str, TriggerRule]) -> List[str]:
    """
    Return the names of the rule groups that `event` starts, in definition order.

    Every rule is validated first, so a malformed rule aborts evaluation even
    if it would not have matched.
    """
    for name, rule in rules.items():
        validate_rule(name, rule)
    return [name for name, rule in rules.items() if rule_matches(rule, event)]


# ----------------------------------------------------------------------
# Parsing a CI-style `on:` block
# ----------------------------------------------------------------------

_SECTION_KEYS = {"branches", "paths"}


def _patterns(workflow: str, key: str, raw: Any) -> Tuple[str, ...]:
    if raw is None:
        return ()
    if isinstance(raw, str):
        raw = [raw]
    if not isinstance(raw, list):
        raise MalformedTriggerRule(workflow, f"'{key}' must be a list of patterns")
    return tuple(raw)


def _event_section(workflow: str, key: str, section: Any) -> Tuple[Tuple[str, ...], Tuple[str, ...]]:
    """(branches, paths) of a `push:` / `pull_request:` section."""
    if section is None:
        return (), ()
    if not isinstance(section, Mapping):
        raise MalformedTriggerRule(workflow, f"'{key}' must be a mapping")
    unknown = sorted(set(section) - _SECTION_KEYS)
    if unknown:
        raise MalformedTriggerRule(workflow, f"unknown '{key}' option(s): {', '.join(map(str, unknown))}")
    return (
        _patterns(workflow, f"{key}.branches", section.get("branches")),
        _patterns(workflow, f"{key}.paths", section.get("paths")),
    )


def parse_trigger_rule(workflow: str, on: Any) -> TriggerRule:
    """
    Build a TriggerRule from an `on:` value.

    Accepts the three shapes CI files use: a single event name, a list of
    event names, or a mapping of event name -> options.
    """
    if isinstance(on, str):
        on = [on]
    if isinstance(on, list):
        on = {str(k): None for k in on}
    if not isinstance(on, Mapping):
        raise MalformedTriggerRule(workflow, "'on' must be an event name, a list, or a mapping")

    unknown = sorted(set(on) - _KNOWN_ON_KEYS)
    if unknown:
        raise MalformedTriggerRule(workflow, f"unknown trigger(s): {', '.join(unknown)}")

    paths = list(_patterns(workflow, "paths", on.get("paths")))

    push_branches: Optional[Tuple[str, ...]] = None
    if "push" in on:
        push_branches, push_paths = _event_section(workflow, "push", on["push"])
        paths.extend(p for p in push_paths if p not in paths)

    pr_branches, pr_paths = _event_section(workflow, "pull_request", on.get("pull_request"))
    paths.extend(p for p in pr_paths if p not in paths)

    schedules: List[str] = []
    raw_schedule = on.get("schedule") or []
    if not isinstance(raw_schedule, list):
        raise MalformedTriggerRule(workflow, "'schedule' must be a list of {cron: ...} entries")
    for entry in raw_schedule:
        if not isinstance(entry, Mapping) or "cron" not in entry:
            raise MalformedTriggerRule(workflow, "each schedule entry needs a 'cron' key")
        schedules.append(entry["cron"])

    rule = TriggerRule(
        push_branches=push_branches,
        pull_request="pull_request" in on,
        pull_request_branches=pr_branches,
        schedules=tuple(schedules),
        workflow_dispatch="workflow_dispatch" in on,
        workflow_call="workflow_call" in on,
        paths=tuple(paths),
    )
    validate_rule(workflow, rule)
    return rule


def describe_rule(rule: TriggerRule) -> Dict[str, Any]:
    """Compact, JSON-friendly view of a rule (used by `relayci plan`)."""
    out: Dict[str, Any] = {}
    if rule.push_branches is not None:
        out["push"] = list(rule.push_branches)
    if rule.pull_request:
        out["pull_request"] = list(rule.pull_request_branches) or ["*"]
    if rule.schedules:
        out["schedule"] = list(rule.schedules)
    if rule.workflow_dispatch:
        out["workflow_dispatch"] = True
    if rule.workflow_call:
        out["workflow_call"] = True
    if rule.paths:
        out["paths"] = list(rule.paths)
    return out
