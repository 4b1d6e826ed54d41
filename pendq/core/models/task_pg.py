from __future__ import annotations
from datetime import datetime
from typing import Any
from sqlalchemy import String, DateTime, Integer, Index, func, text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.dialects.postgresql import JSONB

from pendq.core.defaults import DEFAULT_PRIORITY


class Base(DeclarativeBase):
    """SQLAlchemy declarative base for PostgreSQL models"""

    pass


class TaskModel(Base):
    """
    SQLAlchemy model for pending tasks.

    A row exists only while its task is pending: claiming deletes it in the
    same transaction that selects it. There is no in-progress or completed
    state in this table.

    - id: str # uuid4, generated at insert
    - type: str # registry key of the task type
    - priority: int # higher is served first, defaulting to 100
    - payload: dict # full serialization of the task instance, tries included
    - maturity_at: datetime # row is claimable once NOW() >= maturity_at
    - created_at: datetime # insertion time, tie-break after priority
    - updated_at: datetime # last write
    """

    __tablename__ = 'pendq_tasks'
    __table_args__ = (
        # Keeps the claim query (maturity filter + priority/age order) sub-linear.
        Index('idx_pendq_tasks_claim', 'maturity_at', 'priority', 'created_at'),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    type: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    priority: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=DEFAULT_PRIORITY,
        server_default=text(str(DEFAULT_PRIORITY)),
    )
    payload: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False)

    maturity_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(),
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )
