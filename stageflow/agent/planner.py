"""Planner module.

Responsibilities:
- Parse the architect's streamed answer leniently
- Normalize its untrusted `plan` array into a bounded list of AgentPlanEntry
  with stable, unique node ids and numeric phases
- Normalize the `inputs` suggestion list, falling back to defaults

Nothing in here raises on bad input: garbage in yields the fallback plan.
"""

from __future__ import annotations

import json
import math
import re
from typing import Any, Iterable, Mapping

from stageflow.agent.data import sanitize_input_type, truncate, unique_id
from stageflow.config import get_settings
from stageflow.schemas import AgentPlanEntry, InputSuggestion, Phase


FALLBACK_PLAN: tuple[dict[str, str], ...] = (
    {
        "agentName": "Planner",
        "systemInstruction": "Outline the next actionable step.",
        "initialTask": "Outline the next step.",
    },
    {
        "agentName": "Validator",
        "systemInstruction": "Validate previous output.",
        "initialTask": "Validate and adjust previous result.",
    },
)

DEFAULT_INSTRUCTION = "Deliver the next actionable step."
DEFAULT_TASK = "Next step."

# Field aliases the architect is known to use
ID_FIELDS = ("nodeId", "id", "agentName")
NAME_FIELDS = ("agentName", "name")
PHASE_FIELDS = ("stage", "phase", "step", "sequence", "order")
PHASE_LABEL_FIELDS = ("stageLabel", "phaseLabel")
BRANCH_FIELDS = ("branchKey", "branch", "parallelGroup", "lane")
# graphTargets / graphIncoming let a saved (already normalized) plan round-trip
TARGET_FIELDS = (
    "graphTargets", "next", "children", "targets",
    "links", "branches", "connections", "to", "parallel",
)
INCOMING_FIELDS = (
    "graphIncoming", "dependsOn", "requires", "after", "parents",
    "prerequisites", "inputsFrom", "waitFor", "sources",
)
GRAPH_TARGET_FIELDS = ("edges", "connections")
GRAPH_INCOMING_FIELDS = ("parents", "sources")
REF_OBJECT_FIELDS = ("id", "target", "to", "nodeId", "name", "label")

_NUMBER_RE = re.compile(r"\d+(?:\.\d+)?")
_REF_SPLIT_RE = re.compile(r"[,;\n]")
_SLUG_RE = re.compile(r"[^a-z0-9]+")
_FENCE_RE = re.compile(r"^```[a-zA-Z]*\s*(.*?)\s*```$", re.DOTALL)


# =============================================================================
# Value coercion helpers
# =============================================================================

def slugify(value: object) -> str:
    """Lowercase, collapse non-alphanumeric runs to '-', strip edge hyphens."""
    return _SLUG_RE.sub("-", str(value).strip().lower()).strip("-")


def _is_present(value: object) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    return True


def _first_present(item: Mapping[str, Any], fields: Iterable[str]) -> Any:
    for field in fields:
        value = item.get(field)
        if _is_present(value):
            return value
    return None


def _text(value: object, default: str) -> str:
    if isinstance(value, bool) or not isinstance(value, (str, int, float)):
        return default
    if not isinstance(value, str) and _finite(value) is None:
        return default
    text = str(value).strip()
    return text or default


def _as_number(value: float) -> Phase:
    return int(value) if float(value).is_integer() else float(value)


def _number_text(value: int | float) -> str:
    return str(_as_number(value))


def _finite(value: object) -> float | None:
    """The value as a finite float, or None (overflowing ints included)."""
    try:
        number = float(value)
    except (TypeError, ValueError, OverflowError):
        return None
    return number if math.isfinite(number) else None


def _is_numeric_string(value: str) -> bool:
    return _finite(value) is not None


def parse_phase(value: object, fallback: Phase) -> Phase:
    """Read a phase ordinal from a number or from digits inside a string."""
    if value is None or isinstance(value, bool):
        return fallback
    if isinstance(value, (int, float)):
        return _as_number(value) if _finite(value) is not None else fallback
    if not isinstance(value, str):
        return fallback
    number = _finite(value)
    if number is None:
        match = _NUMBER_RE.search(value)
        number = _finite(match.group()) if match else None
    return _as_number(number) if number is not None else fallback


def _phase_label(item: Mapping[str, Any], raw_phase: object, phase: Phase) -> str:
    candidates = [item.get(field) for field in PHASE_LABEL_FIELDS]
    for candidate in (*candidates, raw_phase, item.get("group")):
        if isinstance(candidate, str) and candidate.strip() and not _is_numeric_string(candidate):
            return candidate.strip()
    return f"Stage {phase}"


def _coerce_refs(value: object) -> list[str]:
    """Flatten a reference pool (string, delimited string, object, list) to strings."""
    if value is None or isinstance(value, bool):
        return []
    if isinstance(value, (list, tuple)):
        return [ref for entry in value for ref in _coerce_refs(entry)]
    if isinstance(value, Mapping):
        return _coerce_refs(_first_present(value, REF_OBJECT_FIELDS))
    if isinstance(value, (int, float)):
        return [_number_text(value)] if _finite(value) is not None else []
    if isinstance(value, str):
        return [part.strip() for part in _REF_SPLIT_RE.split(value) if part.strip()]
    return []


def _collect_refs(
    item: Mapping[str, Any],
    fields: tuple[str, ...],
    graph_fields: tuple[str, ...],
) -> tuple[str, ...]:
    pools = [item.get(field) for field in fields]
    graph = item.get("graph")
    if isinstance(graph, Mapping):
        pools.extend(graph.get(field) for field in graph_fields)

    refs: list[str] = []
    for pool in pools:
        try:
            coerced = _coerce_refs(pool)
        except RecursionError:
            continue
        for ref in coerced:
            if ref not in refs:
                refs.append(ref)
    return tuple(refs)


def _unique_node_id(candidate: str, used_ids: set[str]) -> str:
    node_id = candidate
    attempt = 1
    while node_id in used_ids:
        attempt += 1
        node_id = f"{candidate}-{attempt}"
    used_ids.add(node_id)
    return node_id


# =============================================================================
# Plan normalization
# =============================================================================

def normalize_entry(item: Mapping[str, Any], position: int, used_ids: set[str]) -> AgentPlanEntry:
    """Normalize one raw plan element. `position` is 1-based."""
    fallback_id = f"agent-{position}"
    raw_id = _first_present(item, ID_FIELDS)
    candidate = slugify(_text(raw_id, ""))
    node_id = _unique_node_id(candidate or fallback_id, used_ids)

    raw_phase = _first_present(item, PHASE_FIELDS)
    phase = parse_phase(raw_phase, position)

    instruction = _text(item.get("systemInstruction"), DEFAULT_INSTRUCTION)
    branch = _first_present(item, BRANCH_FIELDS)

    return AgentPlanEntry(
        node_id=node_id,
        agent_name=_text(_first_present(item, NAME_FIELDS), f"Agent {position}"),
        system_instruction=instruction,
        initial_task=_text(item.get("initialTask"), _text(item.get("systemInstruction"), DEFAULT_TASK)),
        phase=phase,
        phase_label=_phase_label(item, raw_phase, phase),
        branch_key=slugify(_text(branch, "")) or None,
        graph_targets=_collect_refs(item, TARGET_FIELDS, GRAPH_TARGET_FIELDS),
        graph_incoming=_collect_refs(item, INCOMING_FIELDS, GRAPH_INCOMING_FIELDS),
    )


def normalize_plan(
    payload: Any,
    min_agents: int | None = None,
    max_agents: int | None = None,
) -> list[AgentPlanEntry]:
    """Turn an untrusted architect payload into a bounded plan.

    Args:
        payload: Decoded JSON; either an object with a `plan` array or the
            array itself. Anything else yields the fallback plan.
        min_agents: Lower bound, padded by cycling the fallback entries
        max_agents: Upper bound, extra entries are dropped

    Returns:
        Between `min_agents` and `max_agents` entries with distinct node ids
    """
    settings = get_settings()
    max_agents = max(1, max_agents if max_agents is not None else settings.plan_max_agents)
    min_agents = min(max_agents, min_agents if min_agents is not None else settings.plan_min_agents)

    raw = payload.get("plan") if isinstance(payload, Mapping) else payload
    items: list[Mapping[str, Any]] = []
    if isinstance(raw, (list, tuple)):
        items = [item for item in raw if isinstance(item, Mapping)][:max_agents]
    while len(items) < min_agents:
        items.append(FALLBACK_PLAN[len(items) % len(FALLBACK_PLAN)])

    used_ids: set[str] = set()
    return [normalize_entry(item, position, used_ids) for position, item in enumerate(items, 1)]


# =============================================================================
# Input suggestions
# =============================================================================

def default_inputs(problem: str) -> list[InputSuggestion]:
    """Sample inputs offered when the architect suggests none."""
    return [
        InputSuggestion(
            id=unique_id("input"),
            title="Problem Brief",
            type="text",
            content=truncate(problem, 280) or "Summarize the request.",
        ),
        InputSuggestion(
            id=unique_id("input"),
            title="Sample Metrics",
            type="csv",
            content="metric,value\nMetric A,0\nMetric B,0\nMetric C,0",
        ),
        InputSuggestion(
            id=unique_id("input"),
            title="Notes",
            type="text",
            content="- Constraint: TBD\n- Stakeholders: TBD\n- Risk: TBD",
        ),
    ]


def _sample_text(value: object) -> str | None:
    if not _is_present(value):
        return None
    if isinstance(value, (dict, list)):
        try:
            return json.dumps(value, indent=2)
        except (ValueError, RecursionError):
            return None
    return _text(value, "") or None


def normalize_inputs(
    items: Any,
    defaults: list[InputSuggestion] | None = None,
    problem: str = "",
    limit: int | None = None,
) -> list[InputSuggestion]:
    """Normalize the architect's `inputs` list, clamped to `limit` entries."""
    if limit is None:
        limit = get_settings().max_suggested_inputs
    if defaults is None:
        defaults = default_inputs(problem)
    if not isinstance(items, (list, tuple)) or not items:
        return list(defaults)

    suggestions = []
    for index, item in enumerate([i for i in items if isinstance(i, Mapping)][:limit], 1):
        content = _sample_text(_first_present(item, ("sample", "example", "content")))
        suggestions.append(
            InputSuggestion(
                id=unique_id("input"),
                title=_text(item.get("title"), f"Input {index}"),
                type=sanitize_input_type(item.get("type")),
                content=content or truncate(problem, 200) or "Provide context.",
            )
        )
    return suggestions or list(defaults)


# =============================================================================
# Architect response parsing
# =============================================================================

def safe_parse_json(text: str | None) -> Any:
    """Parse JSON, tolerating Markdown fences. Returns {} on failure."""
    stripped = (text or "").strip()
    fenced = _FENCE_RE.match(stripped)
    if fenced:
        stripped = fenced.group(1).strip()
    try:
        return json.loads(stripped or "{}")
    except (ValueError, RecursionError):
        return {}


def parse_plan_response(text: str, problem: str) -> tuple[list[AgentPlanEntry], list[InputSuggestion]]:
    """Normalize the architect's accumulated answer into a plan and inputs."""
    parsed = safe_parse_json(text)
    inputs = parsed.get("inputs") if isinstance(parsed, Mapping) else None
    return normalize_plan(parsed), normalize_inputs(inputs, problem=problem)
