from __future__ import annotations

from datetime import date

from flask import Blueprint, abort, flash, redirect, render_template, request, url_for
from sqlalchemy.orm import Session

from app.sgdea.db import db_session
from app.sgdea.errors import RecordsError
from app.sgdea.modules.retention.models import (
    ClassificationChart,
    ClassificationNode,
    RetentionEntry,
    RetentionSchedule,
)
from app.sgdea.modules.retention.parsers import parse_retention_file
from app.sgdea.modules.retention.service import (
    DISPOSITIONS,
    LEVEL_TYPES,
    SUPPORT_KEYS,
    activate_schedule,
    create_chart,
    create_node,
    create_schedule,
    documents_due_for_disposition,
    import_retention_rows,
    move_node,
    remove_retention,
    set_retention,
)
from app.sgdea.rbac import require_permission
from app.sgdea.utils import current_user, flash_records_error, form_bool

bp = Blueprint("retention", __name__)


def _get_or_404(s: Session, model, obj_id: int):
    obj = s.get(model, obj_id)
    if not obj:
        abort(404)
    return obj


@bp.get("/")
@require_permission("retention.view")
def retention_index():
    s = db_session()
    charts = s.query(ClassificationChart).order_by(ClassificationChart.code.asc()).all()
    schedules = s.query(RetentionSchedule).order_by(RetentionSchedule.created_at.desc()).all()
    return render_template("admin/retention/index.html", charts=charts, schedules=schedules)


# ---------- CCD ----------

@bp.post("/charts/new")
@require_permission("ccd.edit")
def chart_new():
    s = db_session()
    try:
        chart = create_chart(
            s,
            code=request.form.get("code") or "",
            name=request.form.get("name") or "",
            version=request.form.get("version") or "1.0",
            user=current_user(),
        )
    except RecordsError as e:
        s.rollback()
        flash_records_error(e)
        return redirect(url_for("retention.retention_index"))
    s.commit()
    flash(f"CCD {chart.code} created.", "success")
    return redirect(url_for("retention.chart_detail", chart_id=chart.id))


@bp.get("/charts/<int:chart_id>")
@require_permission("retention.view")
def chart_detail(chart_id: int):
    s = db_session()
    chart = _get_or_404(s, ClassificationChart, chart_id)
    return render_template("admin/retention/chart.html", chart=chart, nodes=chart.nodes, level_types=LEVEL_TYPES)


@bp.post("/charts/<int:chart_id>/nodes")
@require_permission("ccd.edit")
def node_new(chart_id: int):
    s = db_session()
    chart = _get_or_404(s, ClassificationChart, chart_id)
    parent = None
    parent_id = (request.form.get("parent_id") or "").strip()
    if parent_id.isdigit():
        parent = _get_or_404(s, ClassificationNode, int(parent_id))
    try:
        node = create_node(
            s,
            chart,
            code=request.form.get("code") or "",
            name=request.form.get("name") or "",
            level_type=request.form.get("level_type") or "",
            description=request.form.get("description"),
            parent=parent,
            user=current_user(),
        )
    except RecordsError as e:
        s.rollback()
        flash_records_error(e)
        return redirect(url_for("retention.chart_detail", chart_id=chart_id))
    s.commit()
    flash(f"Node {node.path} added.", "success")
    return redirect(url_for("retention.chart_detail", chart_id=chart_id))


@bp.post("/nodes/<int:node_id>/move")
@require_permission("ccd.edit")
def node_move(node_id: int):
    s = db_session()
    node = _get_or_404(s, ClassificationNode, node_id)
    new_parent = None
    parent_id = (request.form.get("parent_id") or "").strip()
    if parent_id.isdigit():
        new_parent = _get_or_404(s, ClassificationNode, int(parent_id))
    try:
        move_node(s, node, new_parent, user=current_user())
    except RecordsError as e:
        s.rollback()
        flash_records_error(e)
        return redirect(url_for("retention.chart_detail", chart_id=node.chart_id))
    s.commit()
    flash(f"Node moved to {node.path}.", "success")
    return redirect(url_for("retention.chart_detail", chart_id=node.chart_id))


# ---------- TRD ----------

@bp.post("/schedules/new")
@require_permission("retention.edit")
def schedule_new():
    s = db_session()
    try:
        schedule = create_schedule(
            s,
            code=request.form.get("code") or "",
            name=request.form.get("name") or "",
            version=request.form.get("version") or "1.0",
            user=current_user(),
        )
    except RecordsError as e:
        s.rollback()
        flash_records_error(e)
        return redirect(url_for("retention.retention_index"))
    s.commit()
    flash(f"TRD {schedule.code} created.", "success")
    return redirect(url_for("retention.schedule_detail", schedule_id=schedule.id))


@bp.get("/schedules/<int:schedule_id>")
@require_permission("retention.view")
def schedule_detail(schedule_id: int):
    s = db_session()
    schedule = _get_or_404(s, RetentionSchedule, schedule_id)
    entries = (
        s.query(RetentionEntry)
        .join(ClassificationNode, RetentionEntry.node_id == ClassificationNode.id)
        .filter(RetentionEntry.schedule_id == schedule.id)
        .order_by(ClassificationNode.path.asc())
        .all()
    )
    charts = s.query(ClassificationChart).order_by(ClassificationChart.code.asc()).all()
    nodes = s.query(ClassificationNode).order_by(ClassificationNode.path.asc()).all()
    return render_template(
        "admin/retention/schedule.html",
        schedule=schedule,
        entries=entries,
        charts=charts,
        nodes=nodes,
        dispositions=DISPOSITIONS,
        support_keys=SUPPORT_KEYS,
    )


@bp.post("/schedules/<int:schedule_id>/activate")
@require_permission("retention.edit")
def schedule_activate(schedule_id: int):
    s = db_session()
    schedule = _get_or_404(s, RetentionSchedule, schedule_id)
    try:
        activate_schedule(s, schedule, user=current_user())
    except RecordsError as e:
        s.rollback()
        flash_records_error(e)
        return redirect(url_for("retention.schedule_detail", schedule_id=schedule_id))
    s.commit()
    flash(f"TRD {schedule.code} is now vigente.", "success")
    return redirect(url_for("retention.schedule_detail", schedule_id=schedule_id))


@bp.post("/schedules/<int:schedule_id>/entries")
@require_permission("retention.edit")
def entry_set(schedule_id: int):
    s = db_session()
    schedule = _get_or_404(s, RetentionSchedule, schedule_id)
    node_id = (request.form.get("node_id") or "").strip()
    if not node_id.isdigit():
        flash("Choose a CCD node.", "danger")
        return redirect(url_for("retention.schedule_detail", schedule_id=schedule_id))
    node = _get_or_404(s, ClassificationNode, int(node_id))
    try:
        set_retention(
            s,
            schedule,
            node,
            ag_years=request.form.get("ag_years"),
            ac_years=request.form.get("ac_years"),
            disposition=request.form.get("disposition") or "",
            supports=request.form.getlist("supports"),
            procedure=request.form.get("procedure"),
            observations=request.form.get("observations"),
            user=current_user(),
        )
    except RecordsError as e:
        s.rollback()
        flash_records_error(e)
        return redirect(url_for("retention.schedule_detail", schedule_id=schedule_id))
    s.commit()
    flash(f"Retention for {node.path} saved.", "success")
    return redirect(url_for("retention.schedule_detail", schedule_id=schedule_id))


@bp.post("/schedules/<int:schedule_id>/entries/<int:node_id>/delete")
@require_permission("retention.edit")
def entry_delete(schedule_id: int, node_id: int):
    s = db_session()
    schedule = _get_or_404(s, RetentionSchedule, schedule_id)
    node = _get_or_404(s, ClassificationNode, node_id)
    try:
        remove_retention(s, schedule, node, user=current_user(), confirmed=form_bool(request.form.get("confirm")))
    except RecordsError as e:
        s.rollback()
        flash_records_error(e)
        return redirect(url_for("retention.schedule_detail", schedule_id=schedule_id))
    s.commit()
    flash(f"Retention for {node.path} removed.", "success")
    return redirect(url_for("retention.schedule_detail", schedule_id=schedule_id))


@bp.post("/schedules/<int:schedule_id>/import")
@require_permission("retention.import")
def schedule_import(schedule_id: int):
    s = db_session()
    schedule = _get_or_404(s, RetentionSchedule, schedule_id)
    chart_id = (request.form.get("chart_id") or "").strip()
    if not chart_id.isdigit():
        flash("Choose the CCD the rows refer to.", "danger")
        return redirect(url_for("retention.schedule_detail", schedule_id=schedule_id))
    chart = _get_or_404(s, ClassificationChart, int(chart_id))

    f = request.files.get("file")
    if not f or not f.filename:
        flash("Choose a .csv or .xlsx file.", "danger")
        return redirect(url_for("retention.schedule_detail", schedule_id=schedule_id))
    try:
        rows, parse_errors = parse_retention_file(f.filename, f.read())
    except ValueError as e:
        flash(str(e), "danger")
        return redirect(url_for("retention.schedule_detail", schedule_id=schedule_id))

    try:
        result = import_retention_rows(s, schedule, chart, rows, user=current_user(), parse_errors=parse_errors)
    except RecordsError as e:
        s.rollback()
        flash_records_error(e)
        return redirect(url_for("retention.schedule_detail", schedule_id=schedule_id))
    s.commit()

    flash(
        f"Import finished: {result.succeeded} of {result.processed} row(s) applied.",
        "success" if not result.failed else "warning",
    )
    for err in result.errors[:20]:
        flash(f"Row {err.row_number}: {err.message}", "danger")
    if result.failed > 20:
        flash(f"...and {result.failed - 20} more row error(s).", "danger")
    return redirect(url_for("retention.schedule_detail", schedule_id=schedule_id))


@bp.get("/disposition")
@require_permission("retention.view")
def disposition_report():
    s = db_session()
    raw = (request.args.get("as_of") or "").strip()
    as_of = None
    if raw:
        try:
            as_of = date.fromisoformat(raw)
        except ValueError:
            flash("as_of must be YYYY-MM-DD", "danger")
    report = documents_due_for_disposition(s, today=as_of)
    return render_template(
        "admin/retention/disposition.html",
        report=report,
        as_of=as_of or date.today(),
        dispositions=DISPOSITIONS,
    )
