from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.sgdea.models import Base


class ClassificationChart(Base):
    """Cuadro de Clasificacion Documental (CCD)."""

    __tablename__ = "classification_charts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    code: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    version: Mapped[str] = mapped_column(String(16), nullable=False, default="1.0")
    # borrador | aprobado | vigente | historico
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="borrador")

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    created_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    nodes: Mapped[list["ClassificationNode"]] = relationship(
        "ClassificationNode",
        back_populates="chart",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="ClassificationNode.path",
    )


class ClassificationNode(Base):
    """One level of the CCD tree: fondo > seccion > subseccion > serie > subserie."""

    __tablename__ = "classification_nodes"
    __table_args__ = (
        UniqueConstraint("chart_id", "code", name="uq_classification_node_code"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    chart_id: Mapped[int] = mapped_column(ForeignKey("classification_charts.id", ondelete="CASCADE"), nullable=False)
    parent_id: Mapped[int | None] = mapped_column(
        ForeignKey("classification_nodes.id", ondelete="RESTRICT"),
        nullable=True,
    )

    code: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    level_type: Mapped[str] = mapped_column(String(16), nullable=False)
    depth: Mapped[int] = mapped_column(Integer, nullable=False, default=1)  # root = 1
    path: Mapped[str] = mapped_column(String(1024), nullable=False, default="")  # "100 > 100.1 > 100.1.2"
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    chart: Mapped[ClassificationChart] = relationship("ClassificationChart", back_populates="nodes", lazy="selectin")
    parent: Mapped["ClassificationNode | None"] = relationship(
        "ClassificationNode",
        remote_side=[id],
        back_populates="children",
        lazy="selectin",
    )
    children: Mapped[list["ClassificationNode"]] = relationship(
        "ClassificationNode",
        back_populates="parent",
        lazy="selectin",
        order_by="ClassificationNode.code",
    )

    @property
    def is_root(self) -> bool:
        return self.parent_id is None


class RetentionSchedule(Base):
    """Tabla de Retencion Documental (TRD)."""

    __tablename__ = "retention_schedules"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    code: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    version: Mapped[str] = mapped_column(String(16), nullable=False, default="1.0")
    is_current: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)  # vigente
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    created_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    entries: Mapped[list["RetentionEntry"]] = relationship(
        "RetentionEntry",
        back_populates="schedule",
        cascade="all, delete-orphan",
        lazy="selectin",
    )


class RetentionEntry(Base):
    """Retention times and final disposition for one CCD node within one TRD."""

    __tablename__ = "retention_entries"
    __table_args__ = (
        UniqueConstraint("schedule_id", "node_id", name="uq_retention_schedule_node"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    schedule_id: Mapped[int] = mapped_column(ForeignKey("retention_schedules.id", ondelete="CASCADE"), nullable=False)
    node_id: Mapped[int] = mapped_column(ForeignKey("classification_nodes.id", ondelete="CASCADE"), nullable=False)

    ag_years: Mapped[int] = mapped_column(Integer, nullable=False, default=0)  # archivo de gestion
    ac_years: Mapped[int] = mapped_column(Integer, nullable=False, default=0)  # archivo central
    disposition: Mapped[str] = mapped_column(String(2), nullable=False)  # CT | E | D | S | M

    support_physical: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    support_electronic: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    support_hybrid: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    procedure: Mapped[str | None] = mapped_column(Text, nullable=True)
    observations: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    created_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    updated_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    schedule: Mapped[RetentionSchedule] = relationship("RetentionSchedule", back_populates="entries", lazy="selectin")
    node: Mapped[ClassificationNode] = relationship("ClassificationNode", lazy="selectin")

    @property
    def total_years(self) -> int:
        return self.ag_years + self.ac_years

    @property
    def supports(self) -> dict[str, bool]:
        return {
            "fisico": self.support_physical,
            "electronico": self.support_electronic,
            "hibrido": self.support_hybrid,
        }
