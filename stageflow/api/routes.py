"""FastAPI routes for the Stageflow API.

Endpoints:
- POST   /plan         - Run the architect for a problem
- POST   /run          - Start the agents on the current plan
- POST   /cancel       - Cancel the current run
- GET    /state        - Full run state
- GET    /graph        - Diagram nodes/edges plus node state

Saved plans:
- POST   /plans        - Save a plan
- GET    /plans        - List saved plans
- DELETE /plans/{id}   - Delete a saved plan
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from stageflow.agent.workflow import Orchestrator, OrchestratorError, get_orchestrator
from stageflow.config import get_settings
from stageflow.database.models import SavedPlan
from stageflow.database.session import get_db
from stageflow.database.store import create_saved_plan, delete_saved_plan, list_saved_plans
from stageflow.schemas import (
    GraphResponse,
    PlanRequest,
    RunRequest,
    RunState,
    SavedPlanCreate,
    SavedPlanResponse,
)


logger = logging.getLogger(__name__)
router = APIRouter()

settings = get_settings()


# =============================================================================
# Health Check
# =============================================================================

@router.get("/health")
async def health() -> dict:
    """Health check endpoint."""
    return {
        "status": "ok",
        "version": settings.app_version,
        "environment": settings.environment,
    }


# =============================================================================
# Orchestration Endpoints
# =============================================================================

@router.post("/plan", response_model=RunState, response_model_by_alias=True)
async def create_plan(
    request: PlanRequest,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> RunState:
    """Stream the architect plan and return the normalized plan, inputs and graph."""
    try:
        return await orchestrator.plan(request.problem, request.credentials)
    except OrchestratorError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.post("/run", response_model=RunState, response_model_by_alias=True, status_code=202)
async def start_run(
    request: RunRequest,
    background_tasks: BackgroundTasks,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> RunState:
    """Start the agents.

    Pre-flight runs before responding; the phases then execute in the
    background. Poll GET /state or GET /graph for progress.
    """
    entries = orchestrator.select_data(request.selected_input_ids, request.uploads, request.notes)
    try:
        await orchestrator.preflight(entries, request.credentials)
    except OrchestratorError as e:
        raise HTTPException(status_code=400, detail=str(e))

    background_tasks.add_task(execute_run_task, orchestrator)
    logger.info(f"Queued run with {len(entries)} data entries")
    return orchestrator.state


async def execute_run_task(orchestrator: Orchestrator) -> None:
    """Background task to execute the phases of a run."""
    try:
        await orchestrator.execute()
    except Exception as e:
        logger.error(f"Error executing run: {e}")
        orchestrator.state.error = str(e)


@router.post("/cancel")
async def cancel_run(orchestrator: Orchestrator = Depends(get_orchestrator)) -> dict:
    """Cancel the running agents."""
    if not orchestrator.cancel():
        raise HTTPException(status_code=400, detail="No run in progress")
    return {"status": "cancelled"}


@router.get("/state", response_model=RunState, response_model_by_alias=True)
async def get_state(orchestrator: Orchestrator = Depends(get_orchestrator)) -> RunState:
    """Get the full run state."""
    return orchestrator.state


@router.get("/graph", response_model=GraphResponse, response_model_by_alias=True)
async def get_graph(
    focused_id: str | None = Query(default=None),
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> GraphResponse:
    """Get diagram nodes/edges with per-node run state."""
    graph = orchestrator.state.graph
    return GraphResponse(
        nodes=graph.nodes,
        edges=graph.edges,
        state=orchestrator.snapshot(focused_id),
    )


# =============================================================================
# Saved Plan Endpoints
# =============================================================================

def _to_response(saved: SavedPlan) -> SavedPlanResponse:
    return SavedPlanResponse(
        id=saved.id,
        title=saved.title,
        problem=saved.problem,
        plan=saved.plan,
        inputs=saved.inputs,
        created_at=saved.created_at,
        updated_at=saved.updated_at,
    )


@router.post("/plans", response_model=SavedPlanResponse)
async def save_plan(
    request: SavedPlanCreate,
    db: AsyncSession = Depends(get_db),
) -> SavedPlanResponse:
    """Save a plan record."""
    saved = await create_saved_plan(db, request)
    logger.info(f"Saved plan {saved.id}")
    return _to_response(saved)


@router.get("/plans", response_model=list[SavedPlanResponse])
async def get_saved_plans(
    limit: int = Query(default=100, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
) -> list[SavedPlanResponse]:
    """List saved plans, newest first."""
    return [_to_response(saved) for saved in await list_saved_plans(db, limit)]


@router.delete("/plans/{plan_id}")
async def remove_saved_plan(
    plan_id: str,
    db: AsyncSession = Depends(get_db),
) -> dict:
    """Delete a saved plan."""
    if not await delete_saved_plan(db, plan_id):
        raise HTTPException(status_code=404, detail="Plan not found")
    return {"status": "deleted", "id": plan_id}
