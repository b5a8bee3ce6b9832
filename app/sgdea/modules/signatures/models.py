from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Integer, String, Text, UniqueConstraint, event, inspect
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.sgdea.errors import ContentIntegrityError
from app.sgdea.models import Base, User
from app.sgdea.modules.document_control.models import Document, DocumentVersion


class DigitalSignature(Base):
    """
    Attestation by one user over one document version.

    Immutable once inserted. Validity is never stored: it is recomputed by
    signatures.service.verify_signature.
    """

    __tablename__ = "digital_signatures"
    __table_args__ = (
        UniqueConstraint("document_id", "signer_user_id", name="uq_digital_signature_document_signer"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    document_id: Mapped[int] = mapped_column(ForeignKey("documents.id", ondelete="RESTRICT"), nullable=False)
    version_id: Mapped[int] = mapped_column(ForeignKey("document_versions.id", ondelete="RESTRICT"), nullable=False)

    signer_user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)
    signer_email: Mapped[str] = mapped_column(String(320), nullable=False)

    reason: Mapped[str] = mapped_column(String(512), nullable=False)  # motivo
    # electronica | avanzada | cualificada
    signature_type: Mapped[str] = mapped_column(String(16), nullable=False, default="electronica")
    hash_algorithm: Mapped[str] = mapped_column(String(16), nullable=False, default="SHA-256")
    content_sha256: Mapped[str] = mapped_column(String(64), nullable=False)
    seal: Mapped[str] = mapped_column(String(64), nullable=False)  # HMAC-SHA256 hex

    signed_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    signer_info_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    metadata_json: Mapped[str | None] = mapped_column(Text, nullable=True)

    document: Mapped[Document] = relationship("Document", lazy="selectin")
    version: Mapped[DocumentVersion] = relationship("DocumentVersion", lazy="selectin")
    signer: Mapped[User] = relationship("User", lazy="selectin")


@event.listens_for(DigitalSignature, "before_update")
def _reject_signature_update(mapper, connection, target: DigitalSignature) -> None:
    if not any(a.history.has_changes() for a in inspect(target).attrs):
        return
    raise ContentIntegrityError("Signatures are immutable once created.")


@event.listens_for(DigitalSignature, "before_delete")
def _reject_signature_delete(mapper, connection, target: DigitalSignature) -> None:
    raise ContentIntegrityError("Signatures are permanent and cannot be deleted.")
