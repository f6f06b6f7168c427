"""SQLModel tables for saved plans.

Tables:
- SavedPlan: a problem statement with its normalized plan and suggested
  inputs, so a run can be repeated without calling the architect again
"""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import uuid4

from sqlalchemy import JSON, Column, Text
from sqlmodel import Field, SQLModel


class SavedPlan(SQLModel, table=True):
    """A persisted plan record."""

    __tablename__ = "saved_plans"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    title: str = Field(index=True)
    problem: str = Field(default="", sa_column=Column(Text))
    plan: list[dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON))
    inputs: list[dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=datetime.utcnow, index=True)
    updated_at: datetime | None = Field(default=None)
