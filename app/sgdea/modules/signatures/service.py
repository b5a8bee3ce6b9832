"""
Electronic signatures over document versions.

A signature binds a signer to the SHA-256 of one stored version. The seal is
an HMAC-SHA256 (keyed by SECRET_KEY) over the signed fields, so a row edited
behind the application's back no longer verifies either.
"""
from __future__ import annotations

import hashlib
import hmac
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from flask import current_app
from sqlalchemy.orm import Session

from app.sgdea.audit import record_event
from app.sgdea.errors import (
    ContentIntegrityError,
    DuplicateSignatureError,
    FieldErrors,
    ValidationError,
)
from app.sgdea.rbac import ensure_permission
from app.sgdea.storage import Storage, StorageError, storage_from_config
from app.sgdea.modules.document_control.models import Document, DocumentVersion
from app.sgdea.modules.document_control.service import latest_version

from .models import DigitalSignature

if TYPE_CHECKING:
    from app.sgdea.models import User

logger = logging.getLogger(__name__)

SIGNATURE_TYPES = ("electronica", "avanzada", "cualificada")
SIGNATURE_STATUSES = ("sin_firmar", "firmado", "firma_invalida")
HASH_ALGORITHM = "SHA-256"


@dataclass
class VerificationResult:
    valida: bool
    errores: list[str] = field(default_factory=list)
    vigente: bool = True
    detalles: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {"valida": self.valida, "errores": list(self.errores), "vigente": self.vigente, "detalles": self.detalles}


def _signing_key() -> bytes:
    return str(current_app.config["SECRET_KEY"]).encode("utf-8")


def _validity_days() -> int:
    return int(current_app.config.get("SIGNATURE_VALIDITY_DAYS") or 365)


def seal_payload(
    *,
    document_id: int,
    version_id: int,
    signer_user_id: int,
    signer_email: str,
    content_sha256: str,
    signed_at: datetime,
) -> bytes:
    payload = {
        "document_id": document_id,
        "version_id": version_id,
        "signer_user_id": signer_user_id,
        "signer_email": signer_email,
        "content_sha256": content_sha256,
        "signed_at": signed_at.isoformat(),
    }
    return json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("utf-8")


def compute_seal(key: bytes, payload: bytes) -> str:
    return hmac.new(key, payload, hashlib.sha256).hexdigest()


def _seal_for(sig: DigitalSignature) -> str:
    return compute_seal(
        _signing_key(),
        seal_payload(
            document_id=sig.document_id,
            version_id=sig.version_id,
            signer_user_id=sig.signer_user_id,
            signer_email=sig.signer_email,
            content_sha256=sig.content_sha256,
            signed_at=sig.signed_at,
        ),
    )


def check_version_content(version: DocumentVersion, expected_sha256: str, storage: Storage) -> str:
    """Hash the stored bytes of a version. Raises ContentIntegrityError on mismatch or missing content."""
    try:
        data = storage.read_bytes(version.storage_key)
    except StorageError as e:
        raise ContentIntegrityError(f"Content of version {version.label} is not available: {e}")
    actual = hashlib.sha256(data).hexdigest()
    if not hmac.compare_digest(actual, expected_sha256):
        raise ContentIntegrityError(
            f"Document hash does not match the signed hash (version {version.label}); the content was modified."
        )
    return actual


def list_signatures(s: Session, doc: Document) -> list[DigitalSignature]:
    return (
        s.query(DigitalSignature)
        .filter(DigitalSignature.document_id == doc.id)
        .order_by(DigitalSignature.signed_at.asc(), DigitalSignature.id.asc())
        .all()
    )


def sign_document(
    s: Session,
    doc: Document,
    signer: "User",
    reason: str,
    *,
    confirmed: bool,
    signature_type: str = "electronica",
    client_ip: str | None = None,
    user_agent: str | None = None,
    storage: Storage | None = None,
) -> DigitalSignature:
    """
    Sign the current version of a document.

    Preconditions are checked before anything is written: permission, a
    non-empty reason, explicit confirmation, a version to sign and no earlier
    signature by the same signer on any version of the document.
    """
    ensure_permission(signer, "signatures.sign")

    errs = FieldErrors()
    reason = (reason or "").strip()
    if not reason:
        errs.add("reason", "A reason for signing is required.")
    elif len(reason) > 512:
        errs.add("reason", "Reason must be at most 512 characters.")
    if not confirmed:
        errs.add("confirmed", "You must confirm the signature.")
    sig_type = (signature_type or "electronica").strip().lower()
    if sig_type not in SIGNATURE_TYPES:
        errs.add("signature_type", f"Signature type must be one of: {', '.join(SIGNATURE_TYPES)}.")
    errs.raise_if_any()

    version = latest_version(s, doc)
    if version is None:
        raise ValidationError("The document has no version to sign.", field="version")

    dup = (
        s.query(DigitalSignature)
        .filter(
            DigitalSignature.document_id == doc.id,
            DigitalSignature.signer_user_id == signer.id,
        )
        .first()
    )
    if dup is not None:
        raise DuplicateSignatureError(
            f"{signer.email} already signed {doc.code} on {dup.signed_at:%Y-%m-%d %H:%M}."
        )

    storage = storage or storage_from_config()
    content_sha256 = check_version_content(version, version.sha256, storage)

    signed_at = datetime.utcnow().replace(microsecond=0)
    seal = compute_seal(
        _signing_key(),
        seal_payload(
            document_id=doc.id,
            version_id=version.id,
            signer_user_id=signer.id,
            signer_email=signer.email,
            content_sha256=content_sha256,
            signed_at=signed_at,
        ),
    )
    signer_info = {
        "email": signer.email,
        "name": signer.display_name,
        "identification": signer.identification,
        "job_title": signer.job_title,
    }
    meta = {"client_ip": client_ip, "user_agent": (user_agent or "")[:255] or None}

    sig = DigitalSignature(
        document_id=doc.id,
        version_id=version.id,
        signer_user_id=signer.id,
        signer_email=signer.email,
        reason=reason,
        signature_type=sig_type,
        hash_algorithm=HASH_ALGORITHM,
        content_sha256=content_sha256,
        seal=seal,
        signed_at=signed_at,
        signer_info_json=json.dumps(signer_info, sort_keys=True),
        metadata_json=json.dumps(meta, sort_keys=True),
    )
    s.add(sig)

    if doc.signature_status == "sin_firmar":
        doc.signature_status = "firmado"
    s.flush()

    record_event(
        s,
        actor=signer,
        action="signature.create",
        entity_type="DigitalSignature",
        entity_id=str(sig.id),
        reason=reason,
        metadata={
            "doc_id": doc.id,
            "code": doc.code,
            "version": version.label,
            "content_sha256": content_sha256,
            "signature_type": sig_type,
        },
    )
    return sig


def verify_signature(
    s: Session,
    sig: DigitalSignature,
    *,
    now: datetime | None = None,
    storage: Storage | None = None,
) -> VerificationResult:
    """Recompute everything a signature claims. Never writes; safe to call repeatedly."""
    now = now or datetime.utcnow()
    storage = storage or storage_from_config()
    errores: list[str] = []

    version = sig.version or s.get(DocumentVersion, sig.version_id)
    if version is None:
        errores.append("The signed version no longer exists.")
    else:
        try:
            check_version_content(version, sig.content_sha256, storage)
        except ContentIntegrityError as e:
            errores.append(str(e))

    if not hmac.compare_digest(_seal_for(sig), sig.seal or ""):
        errores.append("Signature seal does not match the signed data.")

    signer = sig.signer
    if signer is None:
        errores.append("Signer no longer exists.")
    elif not signer.is_active:
        errores.append(f"Signer {signer.email} is no longer active.")
    elif signer.email != sig.signer_email:
        errores.append("Signer identity does not match the signature.")

    expires_at = sig.signed_at + timedelta(days=_validity_days())
    vigente = now <= expires_at
    if not vigente:
        errores.append(f"Signature expired on {expires_at:%Y-%m-%d}.")

    detalles = {
        "signature_id": sig.id,
        "firmante": sig.signer_email,
        "fecha_firma": sig.signed_at.isoformat(),
        "vence": expires_at.isoformat(),
        "version": version.label if version else None,
        "hash": sig.content_sha256,
        "algoritmo": sig.hash_algorithm,
        "tipo": sig.signature_type,
        "motivo": sig.reason,
    }
    if errores:
        logger.warning("Signature %s on document %s failed verification: %s", sig.id, sig.document_id, "; ".join(errores))
    return VerificationResult(valida=not errores, errores=errores, vigente=vigente, detalles=detalles)


def signature_summary(
    s: Session,
    doc: Document,
    *,
    now: datetime | None = None,
    storage: Storage | None = None,
) -> dict:
    storage = storage or storage_from_config()
    results = []
    for sig in list_signatures(s, doc):
        r = verify_signature(s, sig, now=now, storage=storage)
        results.append({"signature_id": sig.id, "firmante": sig.signer_email, **r.to_dict()})
    valid = sum(1 for r in results if r["valida"])
    return {
        "total_firmas": len(results),
        "firmas_validas": valid,
        "firmas_invalidas": len(results) - valid,
        "resultados": results,
    }


def refresh_signature_status(
    s: Session,
    doc: Document,
    user: "User",
    *,
    now: datetime | None = None,
    storage: Storage | None = None,
) -> dict:
    """
    Re-verify every signature and sync Document.signature_status.

    Any failing signature marks the document firma_invalida; when all verify
    again (e.g. content restored) it goes back to firmado.
    """
    ensure_permission(user, "signatures.verify")
    summary = signature_summary(s, doc, now=now, storage=storage)
    if summary["total_firmas"] == 0:
        new_status = "sin_firmar"
    elif summary["firmas_invalidas"]:
        new_status = "firma_invalida"
    else:
        new_status = "firmado"

    old_status = doc.signature_status
    if new_status != old_status:
        doc.signature_status = new_status
        s.flush()
        record_event(
            s,
            actor=user,
            action="signature.status_change",
            entity_type="Document",
            entity_id=str(doc.id),
            metadata={
                "code": doc.code,
                "from": old_status,
                "to": new_status,
                "firmas_invalidas": summary["firmas_invalidas"],
            },
        )
        logger.info("Document %s signature status %s -> %s", doc.code, old_status, new_status)
    summary["signature_status"] = doc.signature_status
    return summary


def signature_certificate(
    s: Session,
    doc: Document,
    *,
    now: datetime | None = None,
    storage: Storage | None = None,
) -> dict:
    """JSON-serialisable certificate listing every signature and its current verification."""
    now = now or datetime.utcnow()
    version = latest_version(s, doc)
    summary = signature_summary(s, doc, now=now, storage=storage)
    return {
        "documento": {
            "id": doc.id,
            "codigo": doc.code,
            "titulo": doc.title,
            "expediente": doc.case_file.code if doc.case_file else None,
            "estado": doc.state,
            "estado_firma": doc.signature_status,
        },
        "version_actual": version.label if version else None,
        "hash_documento": version.sha256 if version else None,
        "algoritmo": HASH_ALGORITHM,
        "firmas": summary["resultados"],
        "total_firmas": summary["total_firmas"],
        "todas_validas": summary["total_firmas"] > 0 and summary["firmas_invalidas"] == 0,
        "generado_en": now.isoformat(),
    }
