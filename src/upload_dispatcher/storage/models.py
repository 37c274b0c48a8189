"""
ORM-модели SQL-бэкенда очереди.

Назначение:
- хранение pending-задач и DLQ в одной таблице (dead=true - терминальный статус)
- seq - автоинкремент, разрешает равенство create_time порядком вставки
"""

from __future__ import annotations

from sqlalchemy import JSON, BigInteger, Boolean, Float, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# =============================================================================
# BASE
# =============================================================================
class Base(DeclarativeBase):
    pass


# =============================================================================
# UPLOAD TASK
# =============================================================================
class UploadTaskRecord(Base):
    """
    Задача загрузки (pending или DLQ).
    """

    __tablename__ = "upload_tasks"

    seq: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    task_id: Mapped[str] = mapped_column(String(512), unique=True, nullable=False)

    filename: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str] = mapped_column(Text, default="", nullable=False)
    parents: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    mime_type: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    create_time: Mapped[int] = mapped_column(BigInteger, index=True, nullable=False)

    revision: Mapped[str] = mapped_column(String(64), nullable=False)

    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    not_before: Mapped[float | None] = mapped_column(Float, nullable=True)

    dead: Mapped[bool] = mapped_column(Boolean, default=False, index=True, nullable=False)
    dead_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    dead_at: Mapped[float | None] = mapped_column(Float, nullable=True)
