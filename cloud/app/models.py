from __future__ import annotations

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from datetime import datetime

class Base(DeclarativeBase):
    pass

class Run(Base):
    __tablename__ = "runs"
    id: Mapped[str] = mapped_column(sa.Text, primary_key=True)
    pipeline: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    verdict: Mapped[str] = mapped_column(sa.Text, nullable=False)
    started_at: Mapped[datetime | None] = mapped_column(sa.TIMESTAMP(timezone=True), nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(sa.TIMESTAMP(timezone=True), nullable=True)
    report: Mapped[dict] = mapped_column(JSONB, nullable=False, server_default=sa.text("'{}'::jsonb"))
    created_at: Mapped[datetime] = mapped_column(sa.TIMESTAMP(timezone=True), server_default=sa.text("now()"), nullable=False)
    stages: Mapped[list["StageResult"]] = relationship(back_populates="run", cascade="all, delete-orphan", order_by="StageResult.position")
    artifacts: Mapped[list["ArtifactRecord"]] = relationship(back_populates="run", cascade="all, delete-orphan", order_by="ArtifactRecord.key")

class StageResult(Base):
    __tablename__ = "stage_results"
    run_id: Mapped[str] = mapped_column(sa.Text, sa.ForeignKey("runs.id", ondelete="CASCADE"), primary_key=True)
    label: Mapped[str] = mapped_column(sa.Text, primary_key=True)
    position: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    state: Mapped[str] = mapped_column(sa.Text, nullable=False)
    worker: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    exit_code: Mapped[int | None] = mapped_column(sa.Integer, nullable=True)
    command: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    reason: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    duration: Mapped[float] = mapped_column(sa.Float, nullable=False, server_default=sa.text("0"))
    run: Mapped[Run] = relationship(back_populates="stages")

class ArtifactRecord(Base):
    __tablename__ = "artifacts"
    run_id: Mapped[str] = mapped_column(sa.Text, sa.ForeignKey("runs.id", ondelete="CASCADE"), primary_key=True)
    key: Mapped[str] = mapped_column(sa.Text, primary_key=True)
    stage: Mapped[str] = mapped_column(sa.Text, nullable=False)
    path: Mapped[str] = mapped_column(sa.Text, nullable=False)
    size: Mapped[int] = mapped_column(sa.BigInteger, nullable=False)
    sha256: Mapped[str] = mapped_column(sa.Text, nullable=False)
    run: Mapped[Run] = relationship(back_populates="artifacts")
