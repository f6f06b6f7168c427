"""Pydantic schemas for all orchestrator I/O contracts.

These schemas define the contracts between:
- The plan normalizer and the graph builder / execution engine
- The execution engine and whatever renders its state
- API endpoints and clients
- LLM model inputs
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


InputType = Literal["text", "csv", "json"]
Phase = int | float


# =============================================================================
# Enums
# =============================================================================

class RunStage(str, Enum):
    """Stage of the process-wide run state machine."""
    IDLE = "idle"
    PLANNING = "planning"
    DATA_SELECTION = "data-selection"
    RUNNING = "running"


class OutputStatus(str, Enum):
    """Lifecycle of a single agent's output within a run."""
    RUNNING = "running"
    DONE = "done"
    ERROR = "error"


class DataSource(str, Enum):
    """Where a data entry handed to the agents came from."""
    SUGGESTED = "suggested"
    UPLOAD = "upload"
    NOTES = "notes"


class CamelModel(BaseModel):
    """Base for records that renderers consume with camelCase keys."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )


# =============================================================================
# Plan Schemas
# =============================================================================

class AgentPlanEntry(CamelModel):
    """One specialist agent's configuration, normalized from the architect plan."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )

    node_id: str = Field(..., description="Unique slug identifier within the plan")
    agent_name: str
    system_instruction: str
    initial_task: str
    phase: Phase = Field(..., description="Execution stage ordinal")
    phase_label: str | None = None
    branch_key: str | None = None
    graph_targets: tuple[str, ...] = Field(default=(), description="Raw references to downstream entries")
    graph_incoming: tuple[str, ...] = Field(default=(), description="Raw references to upstream entries")


class InputSuggestion(CamelModel):
    """A sample dataset proposed by the architect."""
    id: str
    title: str
    type: InputType = "text"
    content: str = ""


class DataEntry(CamelModel):
    """A data blob handed to the agents for a run."""
    id: str
    title: str
    type: InputType = "text"
    content: str = ""
    source: DataSource = DataSource.SUGGESTED


# =============================================================================
# Graph Schemas
# =============================================================================

class GraphNode(CamelModel):
    """Read-only projection of a plan entry for a diagram renderer."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: str
    label: str
    phase: Phase
    phase_label: str | None = None


class GraphEdge(CamelModel):
    """Directed edge between two plan entries."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    source: str
    target: str


class PlanGraph(CamelModel):
    """Node/edge list derived from a normalized plan."""
    nodes: list[GraphNode] = Field(default_factory=list)
    edges: list[GraphEdge] = Field(default_factory=list)


class NodeStateSnapshot(CamelModel):
    """Per-node state handed to the diagram renderer on every change."""
    running_ids: list[str] = Field(default_factory=list)
    completed_ids: list[str] = Field(default_factory=list)
    failed_ids: list[str] = Field(default_factory=list)
    focused_id: str | None = None


# =============================================================================
# Execution Schemas
# =============================================================================

class ExecutionOutput(CamelModel):
    """One agent's result within a run. Replaced, never edited in place."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: str
    node_id: str
    phase: Phase
    name: str
    task: str
    instruction: str
    text: str = ""
    status: OutputStatus = OutputStatus.RUNNING
    error: str | None = None


class RunState(CamelModel):
    """Process-wide run state mutated by the orchestrator."""
    stage: RunStage = RunStage.IDLE
    problem: str = ""
    plan_text: str = ""
    plan: list[AgentPlanEntry] = Field(default_factory=list)
    inputs: list[InputSuggestion] = Field(default_factory=list)
    graph: PlanGraph = Field(default_factory=PlanGraph)
    data_entries: list[DataEntry] = Field(default_factory=list)
    outputs: list[ExecutionOutput] = Field(default_factory=list)
    running_ids: frozenset[str] = Field(default_factory=frozenset)
    last_updated_id: str | None = None
    context: str = ""
    summary: str | None = None
    error: str | None = None

    def output_for(self, node_id: str) -> ExecutionOutput | None:
        """Return the output produced for a node in this run, if any."""
        for output in self.outputs:
            if output.node_id == node_id:
                return output
        return None


# =============================================================================
# LLM Schemas
# =============================================================================

class LLMMessage(BaseModel):
    """A single message in an LLM conversation."""
    role: Literal["system", "user", "assistant"] = Field(...)
    content: str = Field(...)


class LLMCredentials(BaseModel):
    """Per-request overrides for the generation endpoint."""
    api_key: str | None = None
    base_url: str | None = None
    model: str | None = None


# =============================================================================
# API Request/Response Schemas
# =============================================================================

class PlanRequest(BaseModel):
    """API request to run the architect for a problem."""
    problem: str = Field(..., min_length=1, description="Problem statement for the architect")
    credentials: LLMCredentials | None = None


class RunRequest(BaseModel):
    """API request to start the agents on the current plan."""
    selected_input_ids: list[str] = Field(default_factory=list)
    uploads: list[DataEntry] = Field(default_factory=list)
    notes: str = ""
    credentials: LLMCredentials | None = None


class GraphResponse(BaseModel):
    """Diagram payload: graph plus node state."""
    nodes: list[GraphNode]
    edges: list[GraphEdge]
    state: NodeStateSnapshot


class SavedPlanCreate(BaseModel):
    """API request to persist a plan."""
    title: str = Field(..., min_length=1)
    problem: str = ""
    plan: list[dict[str, Any]] = Field(default_factory=list)
    inputs: list[dict[str, Any]] = Field(default_factory=list)


class SavedPlanResponse(BaseModel):
    """API response for a persisted plan."""
    id: str
    title: str
    problem: str
    plan: list[dict[str, Any]]
    inputs: list[dict[str, Any]]
    created_at: datetime
    updated_at: datetime | None = None
