from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.sgdea.models import Base
from app.sgdea.modules.retention.models import ClassificationNode


class CaseFile(Base):
    """Expediente: groups the documents of one matter under one CCD node."""

    __tablename__ = "case_files"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    code: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    classification_node_id: Mapped[int | None] = mapped_column(
        ForeignKey("classification_nodes.id", ondelete="RESTRICT"),
        nullable=True,
    )

    # abierto -> cerrado
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="abierto")
    opened_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    closed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    created_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    classification_node: Mapped[ClassificationNode | None] = relationship("ClassificationNode", lazy="selectin")
