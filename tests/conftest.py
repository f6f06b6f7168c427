"""Shared fixtures."""

from __future__ import annotations

import pytest

from stageflow.agent.workflow import Orchestrator
from stageflow.config import Settings

from tests.fakes import BASE_URL, FakeEndpoint, Responder


@pytest.fixture
def settings() -> Settings:
    return Settings(
        llm_api_key="test-key",
        llm_base_url=BASE_URL,
        llm_model="test-model",
        plan_min_agents=2,
        plan_max_agents=5,
        synthesize_summary=False,
        context_char_limit=800,
    )


@pytest.fixture
def make_orchestrator(settings: Settings):
    """Build an orchestrator wired to a FakeEndpoint."""

    def _make(responder: Responder, models_status: int = 200, **overrides) -> tuple[Orchestrator, FakeEndpoint]:
        endpoint = FakeEndpoint(responder, models_status=models_status)
        run_settings = settings.model_copy(update=overrides) if overrides else settings
        return Orchestrator(settings=run_settings, adapter_factory=endpoint.adapter_factory), endpoint

    return _make
