"""Tests for the staged execution engine."""

import asyncio

import httpx
import pytest

from stageflow.agent.workflow import Orchestrator, PlanningError, PreflightError
from stageflow.schemas import OutputStatus, RunStage

from tests.fakes import sse_body, sse_response, system_prompt, user_prompt


THREE_PHASES = {
    "plan": [
        {"agentName": "Collector", "systemInstruction": "Collect the facts", "initialTask": "Gather", "phase": 1},
        {"agentName": "Auditor", "systemInstruction": "Audit the facts", "initialTask": "Check", "phase": 2},
        {"agentName": "Reporter", "systemInstruction": "Report the findings", "initialTask": "Write", "phase": 3},
    ]
}

FAN_IN = {
    "plan": [
        {"agentName": "Alpha", "systemInstruction": "Alpha step", "phase": 1},
        {"agentName": "Beta", "systemInstruction": "Beta step", "phase": 1},
        {"agentName": "Gamma", "systemInstruction": "Gamma step", "phase": 2},
    ]
}

TWO_PHASES = {
    "plan": [
        {"agentName": "Alpha", "systemInstruction": "Alpha step", "phase": 1},
        {"agentName": "Omega", "systemInstruction": "Omega step", "phase": 2},
    ]
}


def first_word(body: dict) -> str:
    return system_prompt(body).split()[0]


def echo(body: dict) -> httpx.Response:
    return sse_response(f"{first_word(body)} ", "says hi")


def ready(orchestrator: Orchestrator, payload: dict, problem: str = "Quarterly review"):
    """Adopt a plan and select every suggested input."""
    orchestrator.adopt_plan(payload, problem=problem)
    return orchestrator.select_data([item.id for item in orchestrator.state.inputs])


class BrokenStream(httpx.AsyncByteStream):
    async def __aiter__(self):
        yield sse_body("partial ", "answer", done=False)
        raise httpx.ReadError("connection reset")


class FaultyStream(httpx.AsyncByteStream):
    async def __aiter__(self):
        yield sse_body("{\"plan\":", done=False)
        raise RuntimeError("stream handler crashed")


class TestPhaseExecution:
    """Phases run in order, agents within a phase run together."""

    @pytest.mark.asyncio
    async def test_failed_agent_does_not_stop_later_phases(self, make_orchestrator):
        def respond(body):
            if first_word(body) == "Audit":
                return httpx.Response(500, text="upstream exploded")
            return echo(body)

        orchestrator, endpoint = make_orchestrator(respond)
        state = await orchestrator.run(ready(orchestrator, THREE_PHASES))

        statuses = {output.node_id: output.status for output in state.outputs}
        assert statuses == {
            "collector": OutputStatus.DONE,
            "auditor": OutputStatus.ERROR,
            "reporter": OutputStatus.DONE,
        }
        assert state.output_for("auditor").error.startswith("HTTP 500")
        assert state.output_for("reporter").text == "Report says hi"
        assert state.stage == RunStage.IDLE
        assert state.running_ids == frozenset()
        assert [first_word(body) for body in endpoint.requests] == ["Collect", "Audit", "Report"]

    @pytest.mark.asyncio
    async def test_failed_agent_contributes_nothing_to_context(self, make_orchestrator):
        def respond(body):
            if first_word(body) == "Audit":
                return httpx.Response(500, text="nope")
            return echo(body)

        orchestrator, endpoint = make_orchestrator(respond)
        await orchestrator.run(ready(orchestrator, THREE_PHASES))

        reporter_prompt = user_prompt(endpoint.requests[-1])
        assert "[Stage 1] Collector:\nCollect says hi" in reporter_prompt
        assert "Auditor" not in reporter_prompt

    @pytest.mark.asyncio
    async def test_mid_stream_failure_keeps_partial_text(self, make_orchestrator):
        def respond(body):
            if first_word(body) == "Audit":
                return httpx.Response(200, stream=BrokenStream())
            return echo(body)

        orchestrator, _ = make_orchestrator(respond)
        state = await orchestrator.run(ready(orchestrator, THREE_PHASES))

        auditor = state.output_for("auditor")
        assert auditor.status == OutputStatus.ERROR
        assert auditor.text == "partial answer"
        assert state.output_for("reporter").status == OutputStatus.DONE

    @pytest.mark.asyncio
    async def test_phase_agents_run_concurrently_behind_a_barrier(self, make_orchestrator):
        both_arrived = asyncio.Event()
        arrived = []
        seen_by_gamma = {}
        holder = {}

        async def respond(body):
            name = first_word(body)
            if name in ("Alpha", "Beta"):
                arrived.append(name)
                if len(arrived) == 2:
                    both_arrived.set()
                # deadlocks (and times out) unless both requests are in flight together
                await asyncio.wait_for(both_arrived.wait(), timeout=2)
                await asyncio.sleep(0.05 if name == "Alpha" else 0.01)
            else:
                state = holder["orchestrator"].state
                seen_by_gamma.update({o.node_id: o.status for o in state.outputs if o.phase == 1})
            return sse_response(name)

        orchestrator, _ = make_orchestrator(respond)
        holder["orchestrator"] = orchestrator
        state = await orchestrator.run(ready(orchestrator, FAN_IN))

        assert sorted(arrived) == ["Alpha", "Beta"]
        assert seen_by_gamma == {"alpha": OutputStatus.DONE, "beta": OutputStatus.DONE}
        assert all(output.status == OutputStatus.DONE for output in state.outputs)
        assert [output.node_id for output in state.outputs][-1] == "gamma"

    @pytest.mark.asyncio
    async def test_rolling_context_is_bounded(self, make_orchestrator):
        def respond(body):
            return sse_response(first_word(body) + " " + "x" * 500)

        orchestrator, endpoint = make_orchestrator(respond, context_char_limit=120)
        state = await orchestrator.run(ready(orchestrator, THREE_PHASES))

        reporter_prompt = user_prompt(endpoint.requests[-1])
        previous = reporter_prompt.split("Previous Output:\n", 1)[1].strip()
        assert len(previous) <= 120
        assert previous.startswith("...")
        assert len(state.context) > 1000

    @pytest.mark.asyncio
    async def test_first_phase_sees_no_previous_output(self, make_orchestrator):
        orchestrator, endpoint = make_orchestrator(echo)
        await orchestrator.run(ready(orchestrator, THREE_PHASES))

        first_prompt = user_prompt(endpoint.requests[0])
        assert "Previous Output:\nNo previous output." in first_prompt
        assert "Problem:\nQuarterly review" in first_prompt
        assert "Task:\nGather" in first_prompt
        assert "1. Problem Brief [text]" in first_prompt
        assert system_prompt(endpoint.requests[0]) == (
            "Collect the facts. Answer in <=50 words using short bullet sentences."
        )


class TestPreflight:
    """Run-level failures abort before any agent starts."""

    @pytest.mark.asyncio
    async def test_requires_a_plan(self, make_orchestrator):
        orchestrator, endpoint = make_orchestrator(echo)
        with pytest.raises(PreflightError):
            await orchestrator.run([])
        assert orchestrator.state.stage == RunStage.IDLE
        assert endpoint.requests == []

    @pytest.mark.asyncio
    async def test_requires_data(self, make_orchestrator):
        orchestrator, endpoint = make_orchestrator(echo)
        orchestrator.adopt_plan(THREE_PHASES, problem="p")
        with pytest.raises(PreflightError, match="data source"):
            await orchestrator.run([])
        assert orchestrator.state.stage == RunStage.IDLE
        assert orchestrator.state.error
        assert orchestrator.state.outputs == []
        assert endpoint.requests == []

    @pytest.mark.asyncio
    async def test_missing_credentials(self, settings):
        def no_key(credentials=None):
            raise ValueError("API key not configured")

        orchestrator = Orchestrator(settings=settings, adapter_factory=no_key)
        entries = ready(orchestrator, THREE_PHASES)
        with pytest.raises(PreflightError, match="Missing credentials"):
            await orchestrator.run(entries)
        assert orchestrator.state.stage == RunStage.IDLE

    @pytest.mark.asyncio
    async def test_rejected_probe(self, make_orchestrator):
        orchestrator, endpoint = make_orchestrator(echo, models_status=401)
        entries = ready(orchestrator, THREE_PHASES)
        with pytest.raises(PreflightError, match="rejected"):
            await orchestrator.run(entries)
        assert orchestrator.state.stage == RunStage.IDLE
        assert endpoint.requests == []

    @pytest.mark.asyncio
    async def test_probe_can_be_disabled(self, make_orchestrator):
        orchestrator, _ = make_orchestrator(echo, models_status=401, preflight_probe=False)
        state = await orchestrator.run(ready(orchestrator, THREE_PHASES))
        assert all(output.status == OutputStatus.DONE for output in state.outputs)

    @pytest.mark.asyncio
    async def test_finished_run_cannot_be_rerun_without_new_plan(self, make_orchestrator):
        orchestrator, _ = make_orchestrator(echo)
        entries = ready(orchestrator, THREE_PHASES)
        await orchestrator.run(entries)
        with pytest.raises(PreflightError):
            await orchestrator.run(entries)


class TestCancellation:
    """Cancelling stops in-flight requests and later phases."""

    @pytest.mark.asyncio
    async def test_cancel_marks_running_outputs_failed(self, make_orchestrator):
        started = asyncio.Event()
        never = asyncio.Event()

        async def respond(body):
            started.set()
            await never.wait()
            return sse_response("late")

        orchestrator, endpoint = make_orchestrator(respond)
        task = asyncio.create_task(orchestrator.run(ready(orchestrator, TWO_PHASES)))
        await asyncio.wait_for(started.wait(), timeout=2)

        assert orchestrator.cancel() is True
        state = await asyncio.wait_for(task, timeout=2)

        assert state.stage == RunStage.IDLE
        assert [(o.node_id, o.status, o.error) for o in state.outputs] == [
            ("alpha", OutputStatus.ERROR, "cancelled"),
        ]
        assert len(endpoint.requests) == 1

    @pytest.mark.asyncio
    async def test_cancel_during_summary_discards_it(self, make_orchestrator):
        summary_started = asyncio.Event()
        never = asyncio.Event()

        async def respond(body):
            if first_word(body) == "Summarize":
                summary_started.set()
                await never.wait()
                return sse_response("late summary")
            return echo(body)

        orchestrator, _ = make_orchestrator(respond, synthesize_summary=True)
        task = asyncio.create_task(orchestrator.run(ready(orchestrator, TWO_PHASES)))
        await asyncio.wait_for(summary_started.wait(), timeout=2)

        assert orchestrator.cancel() is True
        state = await asyncio.wait_for(task, timeout=2)

        assert state.summary is None
        assert state.stage == RunStage.IDLE
        assert [(o.node_id, o.status) for o in state.outputs] == [
            ("alpha", OutputStatus.DONE),
            ("omega", OutputStatus.DONE),
        ]

    def test_cancel_without_run(self, make_orchestrator):
        orchestrator, _ = make_orchestrator(echo)
        assert orchestrator.cancel() is False


class TestPlanning:
    """The architect call produces the plan, inputs and graph."""

    ARCHITECT_ANSWER = (
        '{"plan":[{"agentName":"Scout","phase":1},{"agentName":"Miner","phase":1},'
        '{"agentName":"Judge","phase":2}],'
        '"inputs":[{"title":"Leads","type":"csv","sample":"name,score"}]}'
    )

    @pytest.mark.asyncio
    async def test_plan_streams_and_normalizes(self, make_orchestrator):
        answer = self.ARCHITECT_ANSWER

        def respond(body):
            assert system_prompt(body).startswith("Respond with JSON only")
            return sse_response(answer[:30], answer[30:90], answer[90:])

        orchestrator, _ = make_orchestrator(respond)
        snapshots = []
        orchestrator.subscribe(snapshots.append)
        state = await orchestrator.plan("  Find new customers  ")

        assert state.stage == RunStage.DATA_SELECTION
        assert state.problem == "Find new customers"
        assert state.plan_text == answer
        assert [entry.node_id for entry in state.plan] == ["scout", "miner", "judge"]
        assert [(item.title, item.type) for item in state.inputs] == [("Leads", "csv")]
        assert {(e.source, e.target) for e in state.graph.edges} == {("scout", "judge"), ("miner", "judge")}
        assert snapshots

    @pytest.mark.asyncio
    async def test_planning_failure(self, make_orchestrator):
        orchestrator, _ = make_orchestrator(lambda body: httpx.Response(401, text="bad key"))
        with pytest.raises(PlanningError, match="HTTP 401"):
            await orchestrator.plan("Anything")
        assert orchestrator.state.stage == RunStage.IDLE
        assert orchestrator.state.plan == []

    @pytest.mark.asyncio
    async def test_unexpected_stream_error_returns_to_idle(self, make_orchestrator):
        orchestrator, _ = make_orchestrator(lambda body: httpx.Response(200, stream=FaultyStream()))
        with pytest.raises(PlanningError, match="stream handler crashed"):
            await orchestrator.plan("Anything")
        assert orchestrator.state.stage == RunStage.IDLE
        assert orchestrator.state.error

        # not left busy: a plan can still be adopted afterwards
        state = orchestrator.adopt_plan(THREE_PHASES, problem="Retry")
        assert state.stage == RunStage.DATA_SELECTION

    @pytest.mark.asyncio
    async def test_new_plan_discards_previous_run(self, make_orchestrator):
        answer = self.ARCHITECT_ANSWER

        def respond(body):
            if system_prompt(body).startswith("Respond with JSON only"):
                return sse_response(answer)
            return echo(body)

        orchestrator, _ = make_orchestrator(respond)
        await orchestrator.run(ready(orchestrator, THREE_PHASES))
        assert orchestrator.state.outputs

        state = await orchestrator.plan("Second problem")
        assert state.outputs == []
        assert state.context == ""
        assert [entry.agent_name for entry in state.plan] == ["Scout", "Miner", "Judge"]


class TestSummaryAndObservers:
    """Final synthesis and state-change notifications."""

    @pytest.mark.asyncio
    async def test_summary_collected_after_last_phase(self, make_orchestrator):
        def respond(body):
            if first_word(body) == "Summarize":
                assert "1. Collector: Collect says hi" in user_prompt(body)
                return sse_response("All ", "good")
            return echo(body)

        orchestrator, endpoint = make_orchestrator(respond, synthesize_summary=True)
        state = await orchestrator.run(ready(orchestrator, THREE_PHASES))
        assert state.summary == "All good"
        assert len(endpoint.requests) == 4

    @pytest.mark.asyncio
    async def test_summary_failure_leaves_statuses_alone(self, make_orchestrator):
        def respond(body):
            if first_word(body) == "Summarize":
                return httpx.Response(503, text="busy")
            return echo(body)

        orchestrator, _ = make_orchestrator(respond, synthesize_summary=True)
        state = await orchestrator.run(ready(orchestrator, THREE_PHASES))
        assert state.summary is None
        assert all(output.status == OutputStatus.DONE for output in state.outputs)
        assert state.stage == RunStage.IDLE

    @pytest.mark.asyncio
    async def test_listeners_see_node_lifecycle(self, make_orchestrator):
        orchestrator, _ = make_orchestrator(echo)
        entries = ready(orchestrator, THREE_PHASES)
        snapshots = []
        unsubscribe = orchestrator.subscribe(snapshots.append)
        await orchestrator.run(entries)

        assert any(s.running_ids == ["collector"] for s in snapshots)
        assert any(s.focused_id == "auditor" for s in snapshots)
        final = snapshots[-1]
        assert final.running_ids == []
        assert final.completed_ids == ["collector", "auditor", "reporter"]
        assert final.failed_ids == []

        unsubscribe()
        count = len(snapshots)
        orchestrator.adopt_plan(THREE_PHASES)
        assert len(snapshots) == count
