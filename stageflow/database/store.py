"""Create/list/delete operations for saved plans."""

from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from stageflow.database.models import SavedPlan
from stageflow.schemas import SavedPlanCreate


async def create_saved_plan(db: AsyncSession, record: SavedPlanCreate) -> SavedPlan:
    saved = SavedPlan(
        title=record.title.strip(),
        problem=record.problem,
        plan=record.plan,
        inputs=record.inputs,
    )
    db.add(saved)
    await db.commit()
    await db.refresh(saved)
    return saved


async def list_saved_plans(db: AsyncSession, limit: int = 100) -> list[SavedPlan]:
    """Saved plans, newest first."""
    result = await db.execute(
        select(SavedPlan).order_by(SavedPlan.created_at.desc()).limit(limit)
    )
    return list(result.scalars().all())


async def delete_saved_plan(db: AsyncSession, plan_id: str) -> bool:
    """Delete a saved plan. Returns False if no such record exists."""
    saved = await db.get(SavedPlan, plan_id)
    if saved is None:
        return False
    await db.delete(saved)
    await db.commit()
    return True
