from __future__ import annotations

from flask import Blueprint, abort, current_app, flash, redirect, render_template, request, send_file, url_for
from sqlalchemy.orm import Session

from app.sgdea.audit import record_event
from app.sgdea.db import db_session
from app.sgdea.errors import NotFoundError, RecordsError
from app.sgdea.modules.case_files.models import CaseFile
from app.sgdea.modules.document_control.models import Document, DocumentVersion
from app.sgdea.modules.document_control.service import (
    CONFIDENTIALITY_LEVELS,
    STATES,
    SUPPORT_TYPES,
    UploadedFile,
    add_version,
    available_transitions,
    bulk_upload,
    create_document,
    delete_document,
    iter_versions,
    transition_document,
    update_document_metadata,
)
from app.sgdea.modules.retention.service import disposition_due_date, resolve_for_document
from app.sgdea.pagination import paginate, parse_page_args
from app.sgdea.rbac import require_permission
from app.sgdea.storage import StorageError, storage_from_config
from app.sgdea.utils import current_user, flash_records_error, form_bool

bp = Blueprint("documents", __name__)


def _get_doc_or_404(s: Session, doc_id: int) -> Document:
    d = s.get(Document, doc_id)
    if not d:
        abort(404)
    return d


def _open_case_files(s: Session) -> list[CaseFile]:
    return s.query(CaseFile).filter(CaseFile.status == "abierto").order_by(CaseFile.code.asc()).all()


@bp.get("/")
@require_permission("docs.view")
def documents_list():
    s = db_session()
    search = (request.args.get("q") or "").strip()
    state_filter = (request.args.get("state") or "").strip()
    case_file_filter = (request.args.get("case_file_id") or "").strip()

    q = s.query(Document)
    if search:
        like = f"%{search}%"
        q = q.filter((Document.code.ilike(like)) | (Document.title.ilike(like)))
    if state_filter:
        q = q.filter(Document.state == state_filter)
    if case_file_filter.isdigit():
        q = q.filter(Document.case_file_id == int(case_file_filter))

    page, per_page = parse_page_args(request.args)
    result = paginate(q.order_by(Document.created_at.desc(), Document.id.desc()), page, per_page)
    return render_template(
        "admin/documents/list.html",
        page=result,
        states=STATES,
        search=search,
        state_filter=state_filter,
        case_file_filter=case_file_filter,
    )


@bp.get("/new")
@require_permission("docs.create")
def document_new_get():
    s = db_session()
    return render_template(
        "admin/documents/new.html",
        case_files=_open_case_files(s),
        support_types=SUPPORT_TYPES,
        confidentiality_levels=CONFIDENTIALITY_LEVELS,
        preselected_case_file=request.args.get("case_file_id"),
    )


@bp.post("/new")
@require_permission("docs.create")
def document_new_post():
    s = db_session()
    u = current_user()
    try:
        doc = create_document(s, request.form.to_dict(), u)
        f = request.files.get("file")
        if f and f.filename:
            add_version(
                s,
                doc,
                content=f.read(),
                filename=f.filename,
                content_type=f.mimetype,
                notes="Initial version",
                user=u,
            )
    except RecordsError as e:
        s.rollback()
        flash_records_error(e)
        return redirect(url_for("documents.document_new_get", case_file_id=request.form.get("case_file_id") or None))
    s.commit()
    flash(f"Document {doc.code} created (borrador).", "success")
    return redirect(url_for("documents.document_detail", doc_id=doc.id))


@bp.get("/<int:doc_id>")
@require_permission("docs.view")
def document_detail(doc_id: int):
    s = db_session()
    d = _get_doc_or_404(s, doc_id)

    retention = None
    retention_error = None
    try:
        entry = resolve_for_document(s, d)
        retention = {"entry": entry, "due": disposition_due_date(entry, d.created_at)}
    except NotFoundError as e:
        retention_error = "; ".join(e.messages())

    return render_template(
        "admin/documents/detail.html",
        document=d,
        versions=list(iter_versions(s, d)),
        transitions=available_transitions(d),
        confidentiality_levels=CONFIDENTIALITY_LEVELS,
        retention=retention,
        retention_error=retention_error,
    )


@bp.post("/<int:doc_id>/edit")
@require_permission("docs.edit")
def document_edit(doc_id: int):
    s = db_session()
    d = _get_doc_or_404(s, doc_id)
    try:
        update_document_metadata(
            s,
            d,
            request.form.to_dict(),
            current_user(),
            expected_lock_version=request.form.get("lock_version"),
        )
    except RecordsError as e:
        s.rollback()
        flash_records_error(e)
        return redirect(url_for("documents.document_detail", doc_id=doc_id))
    s.commit()
    flash("Document updated.", "success")
    return redirect(url_for("documents.document_detail", doc_id=doc_id))


@bp.post("/<int:doc_id>/transition")
@require_permission("docs.transition")
def document_transition(doc_id: int):
    s = db_session()
    d = _get_doc_or_404(s, doc_id)
    target = (request.form.get("state") or "").strip()
    try:
        transition_document(
            s,
            d,
            target,
            current_user(),
            reason=request.form.get("reason"),
            expected_lock_version=request.form.get("lock_version"),
        )
    except RecordsError as e:
        s.rollback()
        flash_records_error(e)
        return redirect(url_for("documents.document_detail", doc_id=doc_id))
    s.commit()
    flash(f"Document moved to {target}.", "success")
    return redirect(url_for("documents.document_detail", doc_id=doc_id))


@bp.post("/<int:doc_id>/versions")
@require_permission("docs.edit")
def version_upload(doc_id: int):
    s = db_session()
    d = _get_doc_or_404(s, doc_id)
    f = request.files.get("file")
    if not f or not f.filename:
        flash("Choose a file to upload.", "danger")
        return redirect(url_for("documents.document_detail", doc_id=doc_id))
    try:
        v = add_version(
            s,
            d,
            content=f.read(),
            filename=f.filename,
            content_type=f.mimetype,
            notes=request.form.get("notes"),
            major=form_bool(request.form.get("major")),
            user=current_user(),
        )
    except RecordsError as e:
        s.rollback()
        flash_records_error(e)
        return redirect(url_for("documents.document_detail", doc_id=doc_id))
    s.commit()
    flash(f"Version {v.label} added.", "success")
    return redirect(url_for("documents.document_detail", doc_id=doc_id))


@bp.get("/<int:doc_id>/versions/<int:version_id>/download")
@require_permission("docs.download")
def version_download(doc_id: int, version_id: int):
    s = db_session()
    u = current_user()
    v = s.get(DocumentVersion, version_id)
    if not v or v.document_id != doc_id:
        abort(404)

    storage = storage_from_config(current_app.config)
    try:
        fobj = storage.open(v.storage_key)
    except StorageError as e:
        flash(f"The file for version {v.label} is not available: {e}", "danger")
        return redirect(url_for("documents.document_detail", doc_id=doc_id))
    record_event(
        s,
        actor=u,
        action="doc.download",
        entity_type="DocumentVersion",
        entity_id=str(v.id),
        metadata={"doc_id": doc_id, "version": v.label, "filename": v.filename},
    )
    s.commit()
    return send_file(
        fobj,
        mimetype=v.content_type,
        as_attachment=True,
        download_name=v.filename,
        max_age=0,
    )


@bp.post("/<int:doc_id>/delete")
@require_permission("docs.delete")
def document_delete(doc_id: int):
    s = db_session()
    d = _get_doc_or_404(s, doc_id)
    case_file_id = d.case_file_id
    try:
        delete_document(s, d, current_user(), reason=request.form.get("reason") or "")
    except RecordsError as e:
        s.rollback()
        flash_records_error(e)
        return redirect(url_for("documents.document_detail", doc_id=doc_id))
    s.commit()
    flash("Document deleted.", "success")
    return redirect(url_for("case_files.case_file_detail", case_file_id=case_file_id))


@bp.get("/bulk-upload")
@require_permission("docs.bulk_upload")
def bulk_upload_get():
    s = db_session()
    return render_template(
        "admin/documents/bulk_upload.html",
        case_files=_open_case_files(s),
        support_types=SUPPORT_TYPES,
        confidentiality_levels=CONFIDENTIALITY_LEVELS,
        max_files=current_app.config.get("BULK_UPLOAD_MAX_FILES"),
        max_bytes=current_app.config.get("BULK_UPLOAD_MAX_BYTES"),
        result=None,
    )


@bp.post("/bulk-upload")
@require_permission("docs.bulk_upload")
def bulk_upload_post():
    s = db_session()
    files = [
        UploadedFile(filename=f.filename, content=f.read(), content_type=f.mimetype)
        for f in request.files.getlist("files")
        if f and f.filename
    ]
    try:
        result = bulk_upload(
            s,
            files,
            case_file_id=request.form.get("case_file_id") or "",
            support_type=request.form.get("support_type") or "",
            typology=request.form.get("typology"),
            confidentiality=request.form.get("confidentiality"),
            user=current_user(),
        )
    except RecordsError as e:
        s.rollback()
        flash_records_error(e)
        return redirect(url_for("documents.bulk_upload_get"))
    s.commit()

    if request.accept_mimetypes.best == "application/json":
        return result.to_dict(), 200
    flash(
        f"Bulk upload finished: {result.exitosos} created, {result.errores} rejected.",
        "success" if not result.errores else "warning",
    )
    return render_template(
        "admin/documents/bulk_upload.html",
        case_files=_open_case_files(s),
        support_types=SUPPORT_TYPES,
        confidentiality_levels=CONFIDENTIALITY_LEVELS,
        max_files=current_app.config.get("BULK_UPLOAD_MAX_FILES"),
        max_bytes=current_app.config.get("BULK_UPLOAD_MAX_BYTES"),
        result=result,
    )
