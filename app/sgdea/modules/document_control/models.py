from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Integer, String, Text, UniqueConstraint, event, inspect
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.sgdea.errors import ContentIntegrityError
from app.sgdea.models import Base, User
from app.sgdea.modules.case_files.models import CaseFile


class Document(Base):
    __tablename__ = "documents"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    code: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    typology: Mapped[str | None] = mapped_column(String(128), nullable=True)  # tipologia documental

    case_file_id: Mapped[int] = mapped_column(ForeignKey("case_files.id", ondelete="RESTRICT"), nullable=False)

    # fisico | electronico | hibrido
    support_type: Mapped[str] = mapped_column(String(16), nullable=False)
    # publica | interna | confidencial | reservada | clasificada
    confidentiality: Mapped[str] = mapped_column(String(16), nullable=False, default="interna")

    # borrador -> pendiente -> aprobado -> activo -> archivado, any -> obsoleto
    state: Mapped[str] = mapped_column(String(16), nullable=False, default="borrador")
    # sin_firmar -> firmado -> firma_invalida
    signature_status: Mapped[str] = mapped_column(String(16), nullable=False, default="sin_firmar")

    created_by_user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)
    modified_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    modified_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    lock_version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": lock_version}

    case_file: Mapped[CaseFile] = relationship("CaseFile", lazy="selectin")
    created_by: Mapped[User] = relationship("User", foreign_keys=[created_by_user_id], lazy="selectin")

    versions: Mapped[list["DocumentVersion"]] = relationship(
        "DocumentVersion",
        back_populates="document",
        lazy="selectin",
        order_by="DocumentVersion.id",
        passive_deletes="all",
    )


class DocumentVersion(Base):
    """Immutable snapshot of a document's content. Rows are never updated or deleted."""

    __tablename__ = "document_versions"
    __table_args__ = (
        UniqueConstraint("document_id", "label", name="uq_document_version_label"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    document_id: Mapped[int] = mapped_column(ForeignKey("documents.id", ondelete="RESTRICT"), nullable=False)
    label: Mapped[str] = mapped_column(String(16), nullable=False)  # "1.0", "1.1", "2.0"

    storage_key: Mapped[str] = mapped_column(String(512), nullable=False)
    filename: Mapped[str] = mapped_column(String(255), nullable=False)
    content_type: Mapped[str] = mapped_column(String(128), nullable=False, default="application/octet-stream")
    sha256: Mapped[str] = mapped_column(String(64), nullable=False)
    size_bytes: Mapped[int] = mapped_column(Integer, nullable=False)
    notes: Mapped[str] = mapped_column(String(512), nullable=False, default="")

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    created_by_user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)

    document: Mapped[Document] = relationship("Document", back_populates="versions", lazy="selectin")


@event.listens_for(DocumentVersion, "before_update")
def _reject_version_update(mapper, connection, target: DocumentVersion) -> None:
    state = inspect(target)
    changed = [a.key for a in state.attrs if a.history.has_changes()]
    if changed:
        raise ContentIntegrityError(
            f"Document versions are append-only; refused to change {', '.join(sorted(changed))}."
        )


@event.listens_for(DocumentVersion, "before_delete")
def _reject_version_delete(mapper, connection, target: DocumentVersion) -> None:
    raise ContentIntegrityError("Document versions are append-only and cannot be deleted.")
