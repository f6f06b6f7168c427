"""Graph builder: normalized plan -> node/edge diagram data.

Edge inference, in priority order:
1. Explicit references (`graph_incoming`, `graph_targets`) resolved through
   an alias table (node id, agent name, phase label, branch key,
   "step <n>", "<n>"; case-insensitive, first registration wins).
2. Nodes without a resolved outgoing reference fan out to every node of the
   next greater phase.
3. Nodes in the last phase with no resolved incoming reference chain to the
   next node in plan order.

The graph is advisory: execution order comes from the phases alone.
"""

from __future__ import annotations

from collections import defaultdict

from stageflow.schemas import (
    AgentPlanEntry,
    ExecutionOutput,
    GraphEdge,
    GraphNode,
    NodeStateSnapshot,
    OutputStatus,
    Phase,
    PlanGraph,
    RunState,
)


class AliasTable:
    """Case-insensitive reference lookup where the first writer wins."""

    def __init__(self) -> None:
        self._aliases: dict[str, str] = {}

    def register(self, key: object, node_id: str) -> None:
        if key is None:
            return
        normalized = str(key).strip().lower()
        if normalized and normalized not in self._aliases:
            self._aliases[normalized] = node_id

    def resolve(self, ref: str) -> str | None:
        return self._aliases.get(ref.strip().lower())

    @classmethod
    def from_plan(cls, plan: list[AgentPlanEntry]) -> "AliasTable":
        table = cls()
        for position, entry in enumerate(plan, 1):
            for key in (
                entry.node_id,
                entry.agent_name,
                entry.phase_label,
                entry.branch_key,
                f"step {position}",
                str(position),
            ):
                table.register(key, entry.node_id)
        return table


class _EdgeSet:
    def __init__(self) -> None:
        self.edges: list[GraphEdge] = []
        self._seen: set[tuple[str, str]] = set()

    def add(self, source: str, target: str) -> None:
        if source == target or (source, target) in self._seen:
            return
        self._seen.add((source, target))
        self.edges.append(GraphEdge(source=source, target=target))


def build_graph(plan: list[AgentPlanEntry]) -> PlanGraph:
    """Derive the diagram graph from a normalized plan. Never raises."""
    if not plan:
        return PlanGraph()

    nodes = [
        GraphNode(id=entry.node_id, label=entry.agent_name, phase=entry.phase, phase_label=entry.phase_label)
        for entry in plan
    ]
    aliases = AliasTable.from_plan(plan)

    phase_buckets: dict[Phase, list[str]] = defaultdict(list)
    for entry in plan:
        phase_buckets[entry.phase].append(entry.node_id)
    phases = sorted(phase_buckets)

    edges = _EdgeSet()
    for index, entry in enumerate(plan):
        has_incoming = False
        for ref in entry.graph_incoming:
            source = aliases.resolve(ref)
            if source is not None:
                edges.add(source, entry.node_id)
                has_incoming = True

        explicit = False
        for ref in entry.graph_targets:
            target = aliases.resolve(ref)
            if target is not None:
                edges.add(entry.node_id, target)
                explicit = True

        if explicit:
            continue

        next_phase = next((phase for phase in phases if phase > entry.phase), None)
        if next_phase is not None:
            for target in phase_buckets[next_phase]:
                edges.add(entry.node_id, target)
        elif not has_incoming and index < len(plan) - 1:
            edges.add(entry.node_id, plan[index + 1].node_id)

    return PlanGraph(nodes=nodes, edges=edges.edges)


def node_state_snapshot(state: RunState, focused_id: str | None = None) -> NodeStateSnapshot:
    """Summarize per-node run state for a diagram renderer."""

    def ids_with(status: OutputStatus) -> list[str]:
        return [output.node_id for output in state.outputs if output.status == status]

    return NodeStateSnapshot(
        running_ids=[entry.node_id for entry in state.plan if entry.node_id in state.running_ids],
        completed_ids=ids_with(OutputStatus.DONE),
        failed_ids=ids_with(OutputStatus.ERROR),
        focused_id=focused_id if focused_id is not None else state.last_updated_id,
    )


def outputs_by_phase(outputs: list[ExecutionOutput]) -> dict[Phase, list[ExecutionOutput]]:
    """Group outputs by phase, phases ascending."""
    grouped: dict[Phase, list[ExecutionOutput]] = defaultdict(list)
    for output in outputs:
        grouped[output.phase].append(output)
    return {phase: grouped[phase] for phase in sorted(grouped)}
