"""Staged execution engine.

Run stages:
idle → planning → data-selection → running → idle

Once running, phases execute in ascending order:

START → run_phase ⟲ (until phases exhausted or cancelled) → summarize → END

Within a phase every agent's streaming request runs concurrently; the phase
only settles once all of them have finished (barrier). One agent failing
marks only its own output as `error`.

All RunState mutations replace values (outputs list, running set, output
records) instead of editing them in place.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, TypedDict

from langgraph.graph import END, START, StateGraph

from stageflow.agent.data import (
    ALLOWED_INPUT_TYPES,
    collect_data_entries,
    format_data_entries,
    truncate,
    truncate_tail,
    unique_id,
)
from stageflow.agent.graph import build_graph, node_state_snapshot
from stageflow.agent.planner import normalize_inputs, normalize_plan, parse_plan_response
from stageflow.agent.prompts import (
    SUMMARY_SYSTEM_PROMPT,
    format_agent_prompt,
    format_agent_system_prompt,
    format_architect_prompt,
    format_summary_prompt,
)
from stageflow.config import Settings, get_settings
from stageflow.llm.base import LLMAdapter
from stageflow.llm.openai_compat import build_adapter
from stageflow.schemas import (
    AgentPlanEntry,
    DataEntry,
    ExecutionOutput,
    InputSuggestion,
    LLMCredentials,
    LLMMessage,
    NodeStateSnapshot,
    OutputStatus,
    Phase,
    RunStage,
    RunState,
)


logger = logging.getLogger(__name__)

NO_CONTEXT = "No previous output."

StateListener = Callable[[NodeStateSnapshot], None]
AdapterFactory = Callable[[LLMCredentials | None], LLMAdapter]


class OrchestratorError(Exception):
    """A run-level failure, surfaced once instead of per node."""


class PreflightError(OrchestratorError):
    """The run could not start (credentials, endpoint, plan or data missing)."""


class PlanningError(OrchestratorError):
    """The architect request failed."""


class PipelineState(TypedDict):
    """State threaded through the phase loop."""
    phases: list[Phase]
    phase_index: int
    context: str


class Orchestrator:
    """Owns the process-wide RunState and drives plans through their phases."""

    def __init__(
        self,
        settings: Settings | None = None,
        adapter_factory: AdapterFactory = build_adapter,
    ):
        self.settings = settings or get_settings()
        self.state = RunState()
        self._adapter_factory = adapter_factory
        self._adapter: LLMAdapter | None = None
        self._listeners: list[StateListener] = []
        self._inflight: set[asyncio.Task] = set()
        self._cancelled = False
        self._pipeline = self._build_pipeline()

    # =========================================================================
    # Observers
    # =========================================================================

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """Register a callback fired after every state change.

        Returns:
            A function that removes the listener again
        """
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener)

    def snapshot(self, focused_id: str | None = None) -> NodeStateSnapshot:
        return node_state_snapshot(self.state, focused_id)

    def _notify(self) -> None:
        if not self._listeners:
            return
        snapshot = self.snapshot()
        for listener in list(self._listeners):
            listener(snapshot)

    # =========================================================================
    # Planning
    # =========================================================================

    def _ensure_not_busy(self) -> None:
        if self.state.stage in (RunStage.PLANNING, RunStage.RUNNING):
            raise PreflightError(f"Orchestrator is busy ({self.state.stage.value})")

    async def plan(self, problem: str, credentials: LLMCredentials | None = None) -> RunState:
        """Stream the architect plan for `problem` and normalize it.

        Starts a fresh RunState; the previous plan and outputs are discarded.

        Raises:
            PlanningError: if credentials are missing or the request fails
        """
        self._ensure_not_busy()
        self.state = RunState(stage=RunStage.PLANNING, problem=problem.strip())
        self._notify()
        logger.info("Starting architect plan")

        try:
            adapter = self._adapter_factory(credentials)
        except ValueError as e:
            self._fail(f"Missing credentials: {e}")
            raise PlanningError(self.state.error) from e

        messages = [
            LLMMessage(
                role="system",
                content=format_architect_prompt(
                    self.settings.plan_min_agents,
                    self.settings.plan_max_agents,
                    self.settings.max_suggested_inputs,
                    ALLOWED_INPUT_TYPES,
                ),
            ),
            LLMMessage(role="user", content=self.state.problem),
        ]

        try:
            async for fragment in adapter.stream_chat(messages):
                self.state.plan_text += fragment
                self._notify()
        except asyncio.CancelledError:
            self._fail("Planning cancelled")
            raise
        except Exception as e:
            self._fail(f"Architect request failed: {str(e) or e.__class__.__name__}")
            raise PlanningError(self.state.error) from e
        finally:
            await adapter.close()

        plan, inputs = parse_plan_response(self.state.plan_text, self.state.problem)
        self._set_plan(plan, inputs)
        return self.state

    def adopt_plan(self, payload: Any, problem: str = "") -> RunState:
        """Use a plan obtained elsewhere (saved record, file) instead of the architect."""
        self._ensure_not_busy()
        self.state = RunState(problem=problem.strip())
        raw_inputs = payload.get("inputs") if isinstance(payload, dict) else None
        self._set_plan(
            normalize_plan(payload),
            normalize_inputs(raw_inputs, problem=self.state.problem),
        )
        return self.state

    def _set_plan(self, plan: list[AgentPlanEntry], inputs: list[InputSuggestion]) -> None:
        self.state.plan = plan
        self.state.inputs = inputs
        self.state.graph = build_graph(plan)
        self.state.stage = RunStage.DATA_SELECTION
        logger.info(
            f"Plan ready: {len(plan)} agents across "
            f"{len({entry.phase for entry in plan})} phases, {len(inputs)} suggested inputs"
        )
        self._notify()

    def select_data(
        self,
        selected_input_ids: list[str],
        uploads: list[DataEntry] | None = None,
        notes: str = "",
    ) -> list[DataEntry]:
        """Build the data entries for a run from the current suggestions."""
        return collect_data_entries(self.state.inputs, selected_input_ids, uploads or [], notes)

    # =========================================================================
    # Running
    # =========================================================================

    async def run(
        self,
        data_entries: list[DataEntry],
        credentials: LLMCredentials | None = None,
    ) -> RunState:
        """Pre-flight, then execute every phase of the current plan."""
        await self.preflight(data_entries, credentials)
        return await self.execute()

    async def preflight(
        self,
        data_entries: list[DataEntry],
        credentials: LLMCredentials | None = None,
    ) -> None:
        """Validate everything a run needs and enter the `running` stage.

        Raises:
            PreflightError: the run is aborted and the stage returns to idle
        """
        self._ensure_not_busy()
        if self.state.stage != RunStage.DATA_SELECTION or not self.state.plan:
            self._abort("No plan available. Run the architect first.")
        if not data_entries:
            self._abort("Select or add at least one data source.")

        try:
            adapter = self._adapter_factory(credentials)
        except ValueError as e:
            self._abort(f"Missing credentials: {e}")

        if self.settings.preflight_probe and not await adapter.health_check():
            await adapter.close()
            self._abort("Generation endpoint rejected the credentials or is unreachable.")

        self._adapter = adapter
        self._cancelled = False
        self.state.stage = RunStage.RUNNING
        self.state.data_entries = list(data_entries)
        self.state.outputs = []
        self.state.running_ids = frozenset()
        self.state.last_updated_id = None
        self.state.context = ""
        self.state.summary = None
        self.state.error = None
        self._notify()

    async def execute(self) -> RunState:
        """Walk the plan's phases. Call after a successful `preflight`."""
        if self.state.stage != RunStage.RUNNING or self._adapter is None:
            raise PreflightError("Run has not passed pre-flight")

        phases = sorted({entry.phase for entry in self.state.plan})
        logger.info(f"Running {len(self.state.plan)} agents in {len(phases)} phases")
        try:
            await self._pipeline.ainvoke(
                PipelineState(phases=phases, phase_index=0, context=""),
                config={"recursion_limit": 2 * len(phases) + 10},
            )
        finally:
            self._inflight.clear()
            await self._adapter.close()
            self._adapter = None
            self.state.running_ids = frozenset()
            self.state.stage = RunStage.IDLE
            self._notify()

        failed = sum(1 for output in self.state.outputs if output.status == OutputStatus.ERROR)
        logger.info(f"Run finished: {len(self.state.outputs) - failed} done, {failed} failed")
        return self.state

    def cancel(self) -> bool:
        """Cancel every in-flight request; no further phase starts."""
        if self.state.stage != RunStage.RUNNING:
            return False
        self._cancelled = True
        for task in list(self._inflight):
            task.cancel()
        logger.info(f"Run cancelled with {len(self._inflight)} request(s) in flight")
        return True

    def _abort(self, message: str) -> None:
        self._fail(message)
        raise PreflightError(message)

    def _fail(self, message: str) -> None:
        logger.error(message)
        self.state.stage = RunStage.IDLE
        self.state.error = message
        self._notify()

    # =========================================================================
    # Phase loop
    # =========================================================================

    def _build_pipeline(self):
        graph = StateGraph(PipelineState)
        graph.add_node("run_phase", self._run_phase_node)
        graph.add_node("summarize", self._summarize_node)

        routes = {"run_phase": "run_phase", "summarize": "summarize"}
        graph.add_conditional_edges(START, self._route, routes)
        graph.add_conditional_edges("run_phase", self._route, routes)
        graph.add_edge("summarize", END)
        return graph.compile()

    def _route(self, state: PipelineState) -> str:
        if not self._cancelled and state["phase_index"] < len(state["phases"]):
            return "run_phase"
        return "summarize"

    async def _run_phase_node(self, state: PipelineState) -> dict[str, Any]:
        phase = state["phases"][state["phase_index"]]
        entries = [entry for entry in self.state.plan if entry.phase == phase]
        context = await self._run_phase(entries, state["context"])
        return {"phase_index": state["phase_index"] + 1, "context": context}

    async def _run_phase(self, entries: list[AgentPlanEntry], context: str) -> str:
        """Run one phase to its barrier and return the extended context."""
        label = entries[0].phase_label or f"Stage {entries[0].phase}"
        logger.info(f"Starting {label} with {len(entries)} agent(s)")

        outputs = [
            ExecutionOutput(
                id=unique_id("output"),
                node_id=entry.node_id,
                phase=entry.phase,
                name=entry.agent_name,
                task=entry.initial_task,
                instruction=entry.system_instruction,
            )
            for entry in entries
        ]
        self.state.outputs = [*self.state.outputs, *outputs]
        self.state.running_ids = self.state.running_ids | {entry.node_id for entry in entries}
        self._notify()

        data = format_data_entries(self.state.data_entries, self.settings.data_char_limit)
        previous = truncate_tail(context.strip(), self.settings.context_char_limit) or NO_CONTEXT
        tasks = [
            asyncio.create_task(self._run_agent(entry, output.id, self._agent_messages(entry, data, previous)))
            for entry, output in zip(entries, outputs)
        ]
        self._inflight.update(tasks)
        try:
            results = await asyncio.gather(*tasks, return_exceptions=True)
        finally:
            self._inflight.difference_update(tasks)

        for output, result in zip(outputs, results):
            if isinstance(result, asyncio.CancelledError):
                self._finish(output.id, OutputStatus.ERROR, "cancelled")

        for entry, output in zip(entries, outputs):
            current = self._get_output(output.id)
            if current.status == OutputStatus.DONE and current.text.strip():
                context += f"[{entry.phase_label or label}] {current.name}:\n{current.text.strip()}\n\n"
        self.state.context = context

        failed = sum(1 for output in outputs if self._get_output(output.id).status == OutputStatus.ERROR)
        logger.info(f"Settled {label}: {len(outputs) - failed} done, {failed} failed")
        self._notify()
        return context

    def _agent_messages(self, entry: AgentPlanEntry, data: str, previous: str) -> list[LLMMessage]:
        return [
            LLMMessage(role="system", content=format_agent_system_prompt(entry.system_instruction)),
            LLMMessage(
                role="user",
                content=format_agent_prompt(self.state.problem, data, entry.initial_task, previous),
            ),
        ]

    async def _run_agent(self, entry: AgentPlanEntry, output_id: str, messages: list[LLMMessage]) -> bool:
        """Stream one agent's answer into its output. Failures stay local."""
        try:
            async for fragment in self._adapter.stream_chat(messages):
                self._append_text(output_id, fragment)
        except Exception as e:
            logger.warning(f"Agent {entry.agent_name} ({entry.node_id}) failed: {e}")
            self._finish(output_id, OutputStatus.ERROR, str(e) or e.__class__.__name__)
            return False
        self._finish(output_id, OutputStatus.DONE)
        return True

    async def _summarize_node(self, state: PipelineState) -> dict[str, Any]:
        if self._cancelled or not self.settings.synthesize_summary:
            return {"context": state["context"]}

        lines = [
            f"{index}. {output.name}: {truncate(output.text.strip(), 200)}"
            for index, output in enumerate(
                [output for output in self.state.outputs if output.text.strip()], 1
            )
        ]
        if not lines:
            return {"context": state["context"]}

        messages = [
            LLMMessage(role="system", content=SUMMARY_SYSTEM_PROMPT),
            LLMMessage(
                role="user",
                content=format_summary_prompt(
                    self.state.problem,
                    format_data_entries(self.state.data_entries, self.settings.data_char_limit),
                    "\n".join(lines),
                ),
            ),
        ]
        task = asyncio.create_task(self._stream_summary(messages))
        self._inflight.add(task)
        try:
            await task
        except asyncio.CancelledError:
            if not task.cancelled():
                raise
            logger.info("Summary cancelled")
            self.state.summary = None
            self._notify()
        except Exception as e:
            logger.warning(f"Summary request failed: {e}")
            self.state.summary = None
            self._notify()
        finally:
            self._inflight.discard(task)
        return {"context": state["context"]}

    async def _stream_summary(self, messages: list[LLMMessage]) -> None:
        summary = ""
        async for fragment in self._adapter.stream_chat(messages):
            summary += fragment
            self.state.summary = summary
            self._notify()

    # =========================================================================
    # Output records
    # =========================================================================

    def _get_output(self, output_id: str) -> ExecutionOutput:
        return next(output for output in self.state.outputs if output.id == output_id)

    def _replace_output(self, replacement: ExecutionOutput) -> None:
        self.state.outputs = [
            replacement if output.id == replacement.id else output
            for output in self.state.outputs
        ]
        self.state.last_updated_id = replacement.node_id

    def _append_text(self, output_id: str, fragment: str) -> None:
        output = self._get_output(output_id)
        self._replace_output(output.model_copy(update={"text": output.text + fragment}))
        self._notify()

    def _finish(self, output_id: str, status: OutputStatus, error: str | None = None) -> None:
        output = self._get_output(output_id)
        if output.status != OutputStatus.RUNNING:
            return
        self._replace_output(output.model_copy(update={"status": status, "error": error}))
        self.state.running_ids = self.state.running_ids - {output.node_id}
        self._notify()


# Singleton instance
_orchestrator: Orchestrator | None = None


def get_orchestrator() -> Orchestrator:
    """Get the global orchestrator instance."""
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = Orchestrator()
    return _orchestrator
