from __future__ import annotations

import json

from flask import Blueprint, Response, abort, flash, redirect, render_template, request, url_for
from sqlalchemy.orm import Session

from app.sgdea.db import db_session
from app.sgdea.errors import RecordsError
from app.sgdea.modules.document_control.models import Document
from app.sgdea.modules.document_control.service import latest_version
from app.sgdea.modules.signatures.models import DigitalSignature
from app.sgdea.modules.signatures.service import (
    SIGNATURE_TYPES,
    refresh_signature_status,
    sign_document,
    signature_certificate,
    signature_summary,
    verify_signature,
)
from app.sgdea.rbac import require_permission
from app.sgdea.utils import current_user, flash_records_error, form_bool

bp = Blueprint("signatures", __name__)


def _get_doc_or_404(s: Session, doc_id: int) -> Document:
    d = s.get(Document, doc_id)
    if not d:
        abort(404)
    return d


@bp.get("/<int:doc_id>/signatures")
@require_permission("signatures.view")
def signatures_list(doc_id: int):
    s = db_session()
    d = _get_doc_or_404(s, doc_id)
    return render_template(
        "admin/signatures/list.html",
        document=d,
        current_version=latest_version(s, d),
        summary=signature_summary(s, d),
        signature_types=SIGNATURE_TYPES,
    )


@bp.post("/<int:doc_id>/signatures")
@require_permission("signatures.sign")
def signature_create(doc_id: int):
    s = db_session()
    d = _get_doc_or_404(s, doc_id)
    try:
        sig = sign_document(
            s,
            d,
            current_user(),
            request.form.get("reason") or "",
            confirmed=form_bool(request.form.get("confirmed")),
            signature_type=request.form.get("signature_type") or "electronica",
            client_ip=request.remote_addr,
            user_agent=request.headers.get("User-Agent"),
        )
    except RecordsError as e:
        s.rollback()
        flash_records_error(e)
        return redirect(url_for("signatures.signatures_list", doc_id=doc_id))
    s.commit()
    flash(f"Document {d.code} signed (version {sig.version.label}).", "success")
    return redirect(url_for("signatures.signatures_list", doc_id=doc_id))


@bp.get("/<int:doc_id>/signatures/<int:signature_id>/verify")
@require_permission("signatures.verify")
def signature_verify(doc_id: int, signature_id: int):
    s = db_session()
    sig = s.get(DigitalSignature, signature_id)
    if not sig or sig.document_id != doc_id:
        abort(404)
    return verify_signature(s, sig).to_dict(), 200


@bp.post("/<int:doc_id>/signatures/refresh")
@require_permission("signatures.verify")
def signatures_refresh(doc_id: int):
    s = db_session()
    d = _get_doc_or_404(s, doc_id)
    try:
        summary = refresh_signature_status(s, d, current_user())
    except RecordsError as e:
        s.rollback()
        flash_records_error(e)
        return redirect(url_for("signatures.signatures_list", doc_id=doc_id))
    s.commit()
    if summary["firmas_invalidas"]:
        flash(f"{summary['firmas_invalidas']} of {summary['total_firmas']} signature(s) failed verification.", "danger")
    else:
        flash(f"All {summary['total_firmas']} signature(s) verified.", "success")
    return redirect(url_for("signatures.signatures_list", doc_id=doc_id))


@bp.get("/<int:doc_id>/signatures/certificate")
@require_permission("signatures.view")
def signature_certificate_download(doc_id: int):
    s = db_session()
    d = _get_doc_or_404(s, doc_id)
    cert = signature_certificate(s, d)
    body = json.dumps(cert, indent=2, ensure_ascii=False, default=str)
    return Response(
        body,
        mimetype="application/json",
        headers={"Content-Disposition": f'attachment; filename="certificado_{d.code}.json"'},
    )
