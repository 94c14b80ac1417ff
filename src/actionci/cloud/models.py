from __future__ import annotations

from datetime import datetime
from typing import Optional

import sqlalchemy as sa
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    pass


class Run(Base):
    """A workflow run. Only redacted data is stored; secrets never are."""
    __tablename__ = "runs"
    id: Mapped[str] = mapped_column(sa.String(32), primary_key=True)
    workflow: Mapped[str] = mapped_column(sa.Text, nullable=False)
    run_name: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    event: Mapped[str] = mapped_column(sa.Text, nullable=False)
    status: Mapped[str] = mapped_column(sa.Text, nullable=False)  # queued|running|success|failure|cancelled|skipped
    dispatch_order: Mapped[list] = mapped_column(sa.JSON, nullable=False, default=list)
    logs: Mapped[list] = mapped_column(sa.JSON, nullable=False, default=list)
    error: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False)
    finished_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime(timezone=True), nullable=True)

    jobs: Mapped[list["JobRecord"]] = relationship(
        back_populates="run", cascade="all, delete-orphan", order_by="JobRecord.position",
    )


class JobRecord(Base):
    """One job instance of a run."""
    __tablename__ = "jobs"
    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[str] = mapped_column(sa.String(32), sa.ForeignKey("runs.id", ondelete="CASCADE"), nullable=False)
    position: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    job_id: Mapped[str] = mapped_column(sa.Text, nullable=False)
    name: Mapped[str] = mapped_column(sa.Text, nullable=False)
    status: Mapped[str] = mapped_column(sa.Text, nullable=False)
    matrix: Mapped[dict] = mapped_column(sa.JSON, nullable=False, default=dict)
    outputs: Mapped[dict] = mapped_column(sa.JSON, nullable=False, default=dict)
    steps: Mapped[list] = mapped_column(sa.JSON, nullable=False, default=list)
    error: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)

    run: Mapped[Run] = relationship(back_populates="jobs")
