from __future__ import annotations

from flask import Blueprint, abort, flash, redirect, render_template, request, url_for
from sqlalchemy.orm import Session

from app.sgdea.db import db_session
from app.sgdea.errors import RecordsError
from app.sgdea.modules.case_files.models import CaseFile
from app.sgdea.modules.case_files.service import close_case_file, create_case_file
from app.sgdea.modules.document_control.models import Document
from app.sgdea.modules.retention.models import ClassificationNode
from app.sgdea.pagination import paginate, parse_page_args
from app.sgdea.rbac import require_permission
from app.sgdea.utils import current_user, flash_records_error

bp = Blueprint("case_files", __name__)


def _get_case_file_or_404(s: Session, case_file_id: int) -> CaseFile:
    cf = s.get(CaseFile, case_file_id)
    if not cf:
        abort(404)
    return cf


@bp.get("/")
@require_permission("case_files.view")
def case_files_list():
    s = db_session()
    search = (request.args.get("q") or "").strip()
    status_filter = (request.args.get("status") or "").strip()

    q = s.query(CaseFile)
    if search:
        like = f"%{search}%"
        q = q.filter((CaseFile.code.ilike(like)) | (CaseFile.title.ilike(like)))
    if status_filter:
        q = q.filter(CaseFile.status == status_filter)

    page, per_page = parse_page_args(request.args)
    result = paginate(q.order_by(CaseFile.code.asc()), page, per_page)
    return render_template(
        "admin/case_files/list.html",
        page=result,
        search=search,
        status_filter=status_filter,
    )


@bp.get("/new")
@require_permission("case_files.create")
def case_file_new_get():
    s = db_session()
    nodes = s.query(ClassificationNode).filter(ClassificationNode.is_active.is_(True)).order_by(ClassificationNode.path).all()
    return render_template("admin/case_files/new.html", nodes=nodes)


@bp.post("/new")
@require_permission("case_files.create")
def case_file_new_post():
    s = db_session()
    try:
        cf = create_case_file(s, request.form.to_dict(), current_user())
    except RecordsError as e:
        s.rollback()
        flash_records_error(e)
        return redirect(url_for("case_files.case_file_new_get"))
    s.commit()
    flash(f"Case file {cf.code} opened.", "success")
    return redirect(url_for("case_files.case_file_detail", case_file_id=cf.id))


@bp.get("/<int:case_file_id>")
@require_permission("case_files.view")
def case_file_detail(case_file_id: int):
    s = db_session()
    cf = _get_case_file_or_404(s, case_file_id)
    documents = (
        s.query(Document)
        .filter(Document.case_file_id == cf.id)
        .order_by(Document.created_at.asc(), Document.id.asc())
        .all()
    )
    return render_template("admin/case_files/detail.html", case_file=cf, documents=documents)


@bp.post("/<int:case_file_id>/close")
@require_permission("case_files.create")
def case_file_close(case_file_id: int):
    s = db_session()
    cf = _get_case_file_or_404(s, case_file_id)
    reason = (request.form.get("reason") or "").strip()
    if not reason:
        flash("Closing a case file requires a reason.", "danger")
        return redirect(url_for("case_files.case_file_detail", case_file_id=cf.id))
    try:
        close_case_file(s, cf, user=current_user(), reason=reason)
    except RecordsError as e:
        s.rollback()
        flash_records_error(e)
        return redirect(url_for("case_files.case_file_detail", case_file_id=cf.id))
    s.commit()
    flash(f"Case file {cf.code} closed.", "success")
    return redirect(url_for("case_files.case_file_detail", case_file_id=cf.id))
