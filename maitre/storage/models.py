"""SQLAlchemy ORM models for the maitre schema."""

from datetime import datetime

from sqlalchemy import CheckConstraint, DateTime, Integer, String, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Single declarative base for the maitre schema."""

    pass


class ThreadCheckpoint(Base):
    """One row per thread: the latest snapshot, overwritten in place."""

    __tablename__ = "checkpoints"
    __table_args__ = (
        CheckConstraint(
            "node IN ('agent', 'narrate', 'tools', 'end')",
            name="ck_checkpoints_node",
        ),
        {"schema": "maitre"},
    )

    thread_id: Mapped[str] = mapped_column(String(200), primary_key=True)
    node: Mapped[str] = mapped_column(String(20), nullable=False)
    round_trips: Mapped[int] = mapped_column(Integer, nullable=False, server_default="0")
    conversation: Mapped[dict] = mapped_column(JSONB, nullable=False)
    created_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), server_default=func.now())
