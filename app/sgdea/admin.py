from datetime import date, datetime, time, timedelta

from flask import Blueprint, flash, render_template, request
from sqlalchemy import func

from app.sgdea.db import db_session
from app.sgdea.models import AuditEvent
from app.sgdea.pagination import paginate, parse_page_args
from app.sgdea.rbac import require_permission

bp = Blueprint("admin", __name__)


def _parse_date(s: str) -> date | None:
    s = (s or "").strip()
    if not s:
        return None
    try:
        return date.fromisoformat(s)
    except ValueError:
        return None


@bp.get("/")
@require_permission("admin.view")
def index():
    from app.sgdea.modules.case_files.models import CaseFile
    from app.sgdea.modules.document_control.models import Document
    from app.sgdea.modules.retention.service import current_schedule

    s = db_session()
    by_state = {
        state: count
        for state, count in s.query(Document.state, func.count(Document.id)).group_by(Document.state).all()
    }
    invalid = s.query(Document).filter(Document.signature_status == "firma_invalida").count()
    stats = {
        "case_files_open": s.query(CaseFile).filter(CaseFile.status == "abierto").count(),
        "documents_total": sum(by_state.values()),
        "documents_by_state": by_state,
        "documents_signature_invalid": invalid,
    }
    schedule = current_schedule(s)
    recent = s.query(AuditEvent).order_by(AuditEvent.created_at.desc(), AuditEvent.id.desc()).limit(10).all()
    return render_template("admin/index.html", stats=stats, schedule=schedule, recent_events=recent)


@bp.get("/audit")
@require_permission("admin.view")
def audit_list():
    """
    Audit trail with simple filters:
    - action (contains)
    - actor_email (contains)
    - entity_type / entity_id (exact)
    - date range (YYYY-MM-DD)
    """
    s = db_session()
    action = (request.args.get("action") or "").strip()
    actor_email = (request.args.get("actor_email") or "").strip()
    entity_type = (request.args.get("entity_type") or "").strip()
    entity_id = (request.args.get("entity_id") or "").strip()
    date_from = _parse_date(request.args.get("date_from") or "")
    date_to = _parse_date(request.args.get("date_to") or "")

    if (request.args.get("date_from") or "").strip() and not date_from:
        flash("date_from must be YYYY-MM-DD", "danger")
    if (request.args.get("date_to") or "").strip() and not date_to:
        flash("date_to must be YYYY-MM-DD", "danger")

    q = s.query(AuditEvent)
    if action:
        q = q.filter(AuditEvent.action.like(f"%{action}%"))
    if actor_email:
        q = q.filter(AuditEvent.actor_user_email.like(f"%{actor_email.lower()}%"))
    if entity_type:
        q = q.filter(AuditEvent.entity_type == entity_type)
    if entity_id:
        q = q.filter(AuditEvent.entity_id == entity_id)
    if date_from:
        q = q.filter(AuditEvent.created_at >= datetime.combine(date_from, time.min))
    if date_to:
        # inclusive end-date (treat as whole day)
        q = q.filter(AuditEvent.created_at < datetime.combine(date_to + timedelta(days=1), time.min))

    page, per_page = parse_page_args(request.args)
    result = paginate(q.order_by(AuditEvent.created_at.desc(), AuditEvent.id.desc()), page, per_page)
    return render_template(
        "admin/audit/list.html",
        page=result,
        action=action,
        actor_email=actor_email,
        entity_type=entity_type,
        entity_id=entity_id,
        date_from=(request.args.get("date_from") or "").strip(),
        date_to=(request.args.get("date_to") or "").strip(),
    )
