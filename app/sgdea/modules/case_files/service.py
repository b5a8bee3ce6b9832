from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy.orm import Session

from app.sgdea.audit import record_event
from app.sgdea.errors import FieldErrors, InvalidTransitionError
from app.sgdea.rbac import ensure_permission

from .models import CaseFile

if TYPE_CHECKING:
    from app.sgdea.models import User


def create_case_file(s: Session, payload: dict, user: "User") -> CaseFile:
    """Open a new expediente. The CCD node is optional but needed to resolve retention."""
    from app.sgdea.modules.retention.models import ClassificationNode

    ensure_permission(user, "case_files.create")
    errs = FieldErrors()
    code = (payload.get("code") or "").strip()
    title = (payload.get("title") or "").strip()
    node_id = payload.get("classification_node_id")
    if not code:
        errs.add("code", "Code is required.")
    if not title:
        errs.add("title", "Title is required.")
    if code and s.query(CaseFile).filter(CaseFile.code == code).one_or_none():
        errs.add("code", f"Case file code '{code}' already exists.")
    node = None
    if node_id not in (None, ""):
        try:
            node = s.get(ClassificationNode, int(node_id))
        except (TypeError, ValueError):
            node = None
        if node is None:
            errs.add("classification_node_id", "Classification node does not exist.")
    errs.raise_if_any()

    cf = CaseFile(
        code=code,
        title=title,
        description=(payload.get("description") or "").strip() or None,
        classification_node_id=node.id if node else None,
        status="abierto",
        created_by_user_id=user.id,
    )
    s.add(cf)
    s.flush()
    record_event(
        s,
        actor=user,
        action="case_file.create",
        entity_type="CaseFile",
        entity_id=str(cf.id),
        metadata={"code": cf.code, "node": node.code if node else None},
    )
    return cf


def close_case_file(s: Session, cf: CaseFile, *, user: "User", reason: str) -> CaseFile:
    ensure_permission(user, "case_files.create")
    if cf.status != "abierto":
        raise InvalidTransitionError(f"Case file '{cf.code}' is already closed.", field="status")
    cf.status = "cerrado"
    cf.closed_at = datetime.utcnow()
    record_event(
        s,
        actor=user,
        action="case_file.close",
        entity_type="CaseFile",
        entity_id=str(cf.id),
        reason=reason,
        metadata={"code": cf.code},
    )
    return cf
