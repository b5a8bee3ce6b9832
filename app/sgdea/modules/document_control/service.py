"""
Document lifecycle and version management.

Services take an open Session and the acting User; they flush but never
commit. The caller commits once per request, or rolls back when any of these
functions raises, so a failed operation leaves no partial writes.
"""
from __future__ import annotations

import hashlib
import logging
import re
import uuid
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy.orm import Session
from werkzeug.utils import secure_filename

from app.sgdea.audit import record_event
from app.sgdea.errors import (
    FieldErrors,
    InvalidTransitionError,
    NotFoundError,
    RecordsError,
    StaleRecordError,
    ValidationError,
)
from app.sgdea.rbac import ensure_permission
from app.sgdea.storage import Storage, storage_from_config

from .models import Document, DocumentVersion

if TYPE_CHECKING:
    from app.sgdea.models import User

logger = logging.getLogger(__name__)

STATES = ("borrador", "pendiente", "aprobado", "activo", "archivado", "obsoleto")

# One step forward along the approval chain; obsoleto is reachable from anywhere else.
STATE_TRANSITIONS = {
    "borrador": {"pendiente", "obsoleto"},
    "pendiente": {"aprobado", "obsoleto"},
    "aprobado": {"activo", "obsoleto"},
    "activo": {"archivado", "obsoleto"},
    "archivado": {"obsoleto"},
    "obsoleto": set(),
}

SUPPORT_TYPES = ("fisico", "electronico", "hibrido")
CONFIDENTIALITY_LEVELS = ("publica", "interna", "confidencial", "reservada", "clasificada")

# States in which new content may still be attached.
VERSIONABLE_STATES = {"borrador", "pendiente", "aprobado", "activo"}


def normalize_code(code: str | None) -> str:
    return (code or "").strip().upper()


def next_version_label(current: str | None, *, major: bool = False) -> str:
    """
    Increment a "major.minor" version label.

    - no previous version: "1.0"
    - minor bump: "1.0" -> "1.1", "1.9" -> "1.10"
    - major bump: "1.4" -> "2.0"
    """
    cur = (current or "").strip()
    if not cur:
        return "1.0"
    m = re.fullmatch(r"(\d+)(?:\.(\d+))?", cur)
    if not m:
        raise ValueError(f"Unsupported version label: {current!r}")
    mj = int(m.group(1))
    mn = int(m.group(2) or 0)
    if major:
        return f"{mj + 1}.0"
    return f"{mj}.{mn + 1}"


def file_digest_and_size(file_bytes: bytes) -> tuple[str, int]:
    h = hashlib.sha256()
    h.update(file_bytes)
    return (h.hexdigest(), len(file_bytes))


def sanitize_upload_filename(filename: str) -> str:
    fn = secure_filename(filename or "")
    return fn or "document.bin"


def build_version_storage_key(doc: Document, label: str, filename: str) -> str:
    safe_code = doc.code.replace("/", "_").replace("\\", "_").replace(" ", "_")
    return f"documents/{safe_code}/v{label}/{sanitize_upload_filename(filename)}"


def _format_mb(n: int) -> str:
    return f"{n / (1024 * 1024):g} MB"


# ---------- Documents ----------

def validate_document_payload(s: Session, payload: dict) -> FieldErrors:
    from app.sgdea.modules.case_files.models import CaseFile

    errs = FieldErrors()
    title = (payload.get("title") or "").strip()
    support = (payload.get("support_type") or "").strip().lower()
    confidentiality = (payload.get("confidentiality") or "interna").strip().lower()
    raw_case_file = payload.get("case_file_id")

    if not title:
        errs.add("title", "Title is required.")
    elif len(title) > 255:
        errs.add("title", "Title must be at most 255 characters.")
    if not support:
        errs.add("support_type", "Support type is required.")
    elif support not in SUPPORT_TYPES:
        errs.add("support_type", f"Support type must be one of: {', '.join(SUPPORT_TYPES)}.")
    if confidentiality not in CONFIDENTIALITY_LEVELS:
        errs.add("confidentiality", f"Confidentiality must be one of: {', '.join(CONFIDENTIALITY_LEVELS)}.")

    if raw_case_file in (None, ""):
        errs.add("case_file_id", "Case file is required.")
    else:
        try:
            case_file = s.get(CaseFile, int(raw_case_file))
        except (TypeError, ValueError):
            case_file = None
        if case_file is None:
            errs.add("case_file_id", "Case file does not exist.")
        elif case_file.status != "abierto":
            errs.add("case_file_id", f"Case file '{case_file.code}' is closed.")

    code = normalize_code(payload.get("code"))
    if code and s.query(Document).filter(Document.code == code).one_or_none():
        errs.add("code", f"Document code '{code}' already exists.")
    return errs


def create_document(s: Session, payload: dict, user: "User") -> Document:
    """Create a document in borrador. Raises ValidationError with field-keyed messages."""
    ensure_permission(user, "docs.create")
    validate_document_payload(s, payload).raise_if_any()

    now = datetime.utcnow()
    code = normalize_code(payload.get("code"))
    doc = Document(
        # placeholder until the id is known; replaced below
        code=code or f"TMP-{uuid.uuid4().hex[:12]}",
        title=(payload.get("title") or "").strip(),
        description=(payload.get("description") or "").strip() or None,
        typology=(payload.get("typology") or "").strip() or None,
        case_file_id=int(payload["case_file_id"]),
        support_type=payload["support_type"].strip().lower(),
        confidentiality=(payload.get("confidentiality") or "interna").strip().lower(),
        state="borrador",
        signature_status="sin_firmar",
        created_by_user_id=user.id,
        modified_by_user_id=user.id,
        created_at=now,
        modified_at=now,
    )
    s.add(doc)
    s.flush()
    if not code:
        doc.code = f"DOC-{now.year}-{doc.id:06d}"
        s.flush()

    record_event(
        s,
        actor=user,
        action="doc.create",
        entity_type="Document",
        entity_id=str(doc.id),
        metadata={"code": doc.code, "case_file_id": doc.case_file_id, "state": doc.state},
    )
    return doc


def _check_lock(doc: Document, expected_lock_version: int | str | None) -> None:
    if expected_lock_version in (None, ""):
        return
    try:
        expected = int(expected_lock_version)
    except (TypeError, ValueError):
        raise ValidationError("Invalid lock version.", field="lock_version")
    if expected != doc.lock_version:
        raise StaleRecordError(
            f"Document '{doc.code}' was modified by someone else (version {doc.lock_version}, you had {expected}). "
            "Reload and try again."
        )


def available_transitions(doc: Document) -> list[str]:
    targets = STATE_TRANSITIONS.get(doc.state, set())
    return [st for st in STATES if st in targets]


def transition_document(
    s: Session,
    doc: Document,
    target_state: str,
    user: "User",
    *,
    reason: str | None = None,
    expected_lock_version: int | str | None = None,
) -> Document:
    ensure_permission(user, "docs.transition")
    target = (target_state or "").strip().lower()
    if target not in STATES:
        raise ValidationError(f"Unknown state '{target_state}'. Must be one of: {', '.join(STATES)}.", field="state")
    _check_lock(doc, expected_lock_version)
    if target not in STATE_TRANSITIONS.get(doc.state, set()):
        raise InvalidTransitionError(f"Cannot transition from '{doc.state}' to '{target}'.", field="state")

    old_state = doc.state
    doc.state = target
    doc.modified_at = datetime.utcnow()
    doc.modified_by_user_id = user.id
    s.flush()

    record_event(
        s,
        actor=user,
        action="doc.transition",
        entity_type="Document",
        entity_id=str(doc.id),
        reason=(reason or "").strip() or None,
        metadata={"code": doc.code, "from": old_state, "to": target},
    )
    return doc


def update_document_metadata(
    s: Session,
    doc: Document,
    payload: dict,
    user: "User",
    *,
    expected_lock_version: int | str | None = None,
) -> Document:
    """Edit descriptive fields. State, case file and code are not editable here."""
    ensure_permission(user, "docs.edit")
    _check_lock(doc, expected_lock_version)
    if doc.state in ("archivado", "obsoleto"):
        raise InvalidTransitionError(f"Document in state '{doc.state}' cannot be edited.", field="state")

    errs = FieldErrors()
    changes: dict[str, dict] = {}

    title = (payload.get("title") if "title" in payload else doc.title) or ""
    title = title.strip()
    if not title:
        errs.add("title", "Title is required.")
    confidentiality = (payload.get("confidentiality") or doc.confidentiality).strip().lower()
    if confidentiality not in CONFIDENTIALITY_LEVELS:
        errs.add("confidentiality", f"Confidentiality must be one of: {', '.join(CONFIDENTIALITY_LEVELS)}.")
    errs.raise_if_any()

    new_values = {"title": title, "confidentiality": confidentiality}
    for attr in ("description", "typology"):
        if attr in payload:
            new_values[attr] = (payload.get(attr) or "").strip() or None
    for attr, new in new_values.items():
        old = getattr(doc, attr)
        if new != old:
            changes[attr] = {"old": old, "new": new}
            setattr(doc, attr, new)

    if changes:
        doc.modified_at = datetime.utcnow()
        doc.modified_by_user_id = user.id
        s.flush()
        record_event(
            s,
            actor=user,
            action="doc.update",
            entity_type="Document",
            entity_id=str(doc.id),
            metadata={"code": doc.code, "changes": changes},
        )
    return doc


def delete_document(s: Session, doc: Document, user: "User", *, reason: str) -> None:
    """Only empty drafts can be deleted: no versions, no signatures."""
    from app.sgdea.modules.signatures.models import DigitalSignature

    ensure_permission(user, "docs.delete")
    if doc.state != "borrador":
        raise InvalidTransitionError("Only documents in borrador can be deleted.", field="state")
    if doc.versions:
        raise ValidationError("Documents with versions cannot be deleted; mark them obsoleto instead.")
    if s.query(DigitalSignature).filter(DigitalSignature.document_id == doc.id).count():
        raise ValidationError("Signed documents cannot be deleted.")
    if not (reason or "").strip():
        raise ValidationError("Deleting a document requires a reason.", field="reason")

    doc_id, code = doc.id, doc.code
    s.delete(doc)
    s.flush()
    record_event(
        s,
        actor=user,
        action="doc.delete",
        entity_type="Document",
        entity_id=str(doc_id),
        reason=reason.strip(),
        metadata={"code": code},
    )


# ---------- Versions ----------

def latest_version(s: Session, doc: Document) -> DocumentVersion | None:
    return (
        s.query(DocumentVersion)
        .filter(DocumentVersion.document_id == doc.id)
        .order_by(DocumentVersion.id.desc())
        .first()
    )


class VersionHistory(Iterable[DocumentVersion]):
    """
    Restartable view over a document's versions, oldest first.
    Every iteration queries again, so versions added in between are seen.
    """

    def __init__(self, s: Session, document_id: int, *, batch_size: int = 100) -> None:
        self._s = s
        self._document_id = document_id
        self._batch_size = batch_size

    def __iter__(self) -> Iterator[DocumentVersion]:
        q = (
            self._s.query(DocumentVersion)
            .filter(DocumentVersion.document_id == self._document_id)
            .order_by(DocumentVersion.created_at.asc(), DocumentVersion.id.asc())
        )
        return iter(q.yield_per(self._batch_size))

    def __len__(self) -> int:
        return self._s.query(DocumentVersion).filter(DocumentVersion.document_id == self._document_id).count()


def iter_versions(s: Session, doc: Document) -> VersionHistory:
    return VersionHistory(s, doc.id)


def add_version(
    s: Session,
    doc: Document,
    *,
    content: bytes,
    filename: str,
    user: "User",
    content_type: str | None = None,
    notes: str | None = None,
    major: bool = False,
    storage: Storage | None = None,
    max_bytes: int | None = None,
) -> DocumentVersion:
    """Append a new immutable version. Earlier versions are never touched."""
    from flask import current_app

    ensure_permission(user, "docs.edit")
    if doc is None or doc.id is None:
        raise NotFoundError("Document does not exist.")
    if doc.state not in VERSIONABLE_STATES:
        raise InvalidTransitionError(f"Cannot add versions to a document in state '{doc.state}'.", field="state")
    if max_bytes is None:
        max_bytes = int(current_app.config.get("DOCUMENT_MAX_BYTES") or 0)
    if not content:
        raise ValidationError("The file is empty.", field="file")
    if max_bytes and len(content) > max_bytes:
        raise ValidationError(
            f"File exceeds the {_format_mb(max_bytes)} size limit ({len(content)} bytes).",
            field="file",
        )

    prev = latest_version(s, doc)
    label = next_version_label(prev.label if prev else None, major=major)
    safe_name = sanitize_upload_filename(filename)
    sha256, size_bytes = file_digest_and_size(content)
    storage_key = build_version_storage_key(doc, label, safe_name)

    storage = storage or storage_from_config()
    in_use = s.query(DocumentVersion.id).filter(DocumentVersion.storage_key == storage_key).first()
    if in_use is not None:
        raise ValidationError(f"Storage key already in use: {storage_key}", field="file")
    if storage.exists(storage_key):
        # Left behind by a rolled-back upload; no version points to it.
        logger.info("Replacing unreferenced stored object %s", storage_key)
    storage.put_bytes(storage_key, content, content_type=content_type)

    now = datetime.utcnow()
    version = DocumentVersion(
        document=doc,
        label=label,
        storage_key=storage_key,
        filename=safe_name,
        content_type=(content_type or "application/octet-stream").strip(),
        sha256=sha256,
        size_bytes=size_bytes,
        notes=(notes or "").strip(),
        created_at=now,
        created_by_user_id=user.id,
    )
    s.add(version)
    doc.modified_at = now
    doc.modified_by_user_id = user.id
    try:
        s.flush()
    except Exception:
        storage.delete(storage_key)
        raise

    record_event(
        s,
        actor=user,
        action="doc.version_add",
        entity_type="DocumentVersion",
        entity_id=str(version.id),
        metadata={
            "doc_id": doc.id,
            "code": doc.code,
            "from": prev.label if prev else None,
            "to": label,
            "filename": safe_name,
            "sha256": sha256,
            "size_bytes": size_bytes,
        },
    )
    return version


def read_version_content(version: DocumentVersion, storage: Storage | None = None) -> bytes:
    storage = storage or storage_from_config()
    return storage.read_bytes(version.storage_key)


# ---------- Bulk upload ----------

@dataclass(frozen=True)
class UploadedFile:
    filename: str
    content: bytes
    content_type: str | None = None


@dataclass
class FileOutcome:
    filename: str
    ok: bool
    message: str
    document_id: int | None = None


@dataclass
class BulkUploadResult:
    detalles: list[FileOutcome] = field(default_factory=list)

    @property
    def exitosos(self) -> int:
        return sum(1 for d in self.detalles if d.ok)

    @property
    def errores(self) -> int:
        return sum(1 for d in self.detalles if not d.ok)

    def to_dict(self) -> dict:
        return {
            "exitosos": self.exitosos,
            "errores": self.errores,
            "detalles": [
                {"archivo": d.filename, "ok": d.ok, "mensaje": d.message, "documento_id": d.document_id}
                for d in self.detalles
            ],
        }


def _title_from_filename(filename: str) -> str:
    base = (filename or "").rsplit("/", 1)[-1].rsplit("\\", 1)[-1]
    stem = base.rsplit(".", 1)[0] if "." in base else base
    return stem.replace("_", " ").strip() or "Documento"


def bulk_upload(
    s: Session,
    files: list[UploadedFile],
    *,
    case_file_id: int | str,
    support_type: str,
    user: "User",
    typology: str | None = None,
    confidentiality: str | None = None,
    max_bytes: int | None = None,
    max_files: int | None = None,
    storage: Storage | None = None,
) -> BulkUploadResult:
    """
    Create one document (with version 1.0) per file.

    Files are processed in order and independently: each runs in a SAVEPOINT,
    so one rejected file does not undo the ones before or after it.
    """
    from flask import current_app

    ensure_permission(user, "docs.bulk_upload")
    if max_bytes is None:
        max_bytes = int(current_app.config.get("BULK_UPLOAD_MAX_BYTES") or 0)
    if max_files is None:
        max_files = int(current_app.config.get("BULK_UPLOAD_MAX_FILES") or 0)
    if not files:
        raise ValidationError("Select at least one file.", field="files")
    if max_files and len(files) > max_files:
        raise ValidationError(f"At most {max_files} files per upload.", field="files")

    # Shared fields are validated once; a bad case file fails the whole request.
    shared = {
        "title": "bulk",
        "case_file_id": case_file_id,
        "support_type": support_type,
        "confidentiality": confidentiality or "interna",
    }
    validate_document_payload(s, shared).raise_if_any()

    storage = storage or storage_from_config()
    result = BulkUploadResult()
    for f in files:
        name = f.filename or "document.bin"
        if not f.content:
            result.detalles.append(FileOutcome(name, False, "File is empty."))
            continue
        if max_bytes and len(f.content) > max_bytes:
            result.detalles.append(
                FileOutcome(name, False, f"File exceeds the {_format_mb(max_bytes)} size limit ({len(f.content)} bytes).")
            )
            logger.warning("Bulk upload: %s rejected (size %d > %d)", name, len(f.content), max_bytes)
            continue

        try:
            with s.begin_nested():
                doc = create_document(
                    s,
                    {**shared, "title": _title_from_filename(name), "typology": typology},
                    user,
                )
                add_version(
                    s,
                    doc,
                    content=f.content,
                    filename=name,
                    content_type=f.content_type,
                    notes="Carga masiva",
                    user=user,
                    storage=storage,
                    max_bytes=max_bytes,
                )
        except RecordsError as e:
            result.detalles.append(FileOutcome(name, False, "; ".join(e.messages())))
            logger.warning("Bulk upload: %s rejected: %s", name, e)
            continue
        except Exception as e:
            result.detalles.append(FileOutcome(name, False, f"Could not store the file: {e}"))
            logger.warning("Bulk upload: %s failed", name, exc_info=True)
            continue
        result.detalles.append(FileOutcome(name, True, "Created.", document_id=doc.id))

    record_event(
        s,
        actor=user,
        action="doc.bulk_upload",
        entity_type="CaseFile",
        entity_id=str(case_file_id),
        metadata={"exitosos": result.exitosos, "errores": result.errores, "files": len(files)},
    )
    return result
