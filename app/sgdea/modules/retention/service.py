"""
Retention policy service: CCD tree, TRD schedules and the per-node retention entries.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import TYPE_CHECKING, Iterable

from sqlalchemy.orm import Session

from app.sgdea.audit import record_event
from app.sgdea.errors import FieldErrors, NotFoundError, ValidationError
from app.sgdea.rbac import ensure_permission

from .models import ClassificationChart, ClassificationNode, RetentionEntry, RetentionSchedule

if TYPE_CHECKING:
    from app.sgdea.models import User
    from app.sgdea.modules.document_control.models import Document

logger = logging.getLogger(__name__)

# Disposicion final
DISPOSITIONS = {
    "CT": "Conservacion total",
    "E": "Eliminacion",
    "D": "Digitalizacion",
    "S": "Seleccion",
    "M": "Microfilmacion",
}

LEVEL_TYPES = ("fondo", "seccion", "subseccion", "serie", "subserie")

SUPPORT_KEYS = ("fisico", "electronico", "hibrido")

PATH_SEPARATOR = " > "


# ---------- CCD tree ----------

def create_chart(s: Session, *, code: str, name: str, user: "User", version: str = "1.0") -> ClassificationChart:
    ensure_permission(user, "ccd.edit")
    errs = FieldErrors()
    code = (code or "").strip()
    name = (name or "").strip()
    if not code:
        errs.add("code", "Code is required.")
    if not name:
        errs.add("name", "Name is required.")
    if code and s.query(ClassificationChart).filter(ClassificationChart.code == code).one_or_none():
        errs.add("code", f"Chart code '{code}' already exists.")
    errs.raise_if_any()

    chart = ClassificationChart(code=code, name=name, version=(version or "1.0").strip(), created_by_user_id=user.id)
    s.add(chart)
    s.flush()
    record_event(
        s,
        actor=user,
        action="ccd.create",
        entity_type="ClassificationChart",
        entity_id=str(chart.id),
        metadata={"code": chart.code, "name": chart.name},
    )
    return chart


def create_node(
    s: Session,
    chart: ClassificationChart,
    *,
    code: str,
    name: str,
    level_type: str,
    user: "User",
    parent: ClassificationNode | None = None,
    description: str | None = None,
) -> ClassificationNode:
    """Add a level to the CCD. Roots have no parent; children inherit the chart of their parent."""
    ensure_permission(user, "ccd.edit")
    errs = FieldErrors()
    code = (code or "").strip()
    name = (name or "").strip()
    level_type = (level_type or "").strip().lower()
    if not code:
        errs.add("code", "Code is required.")
    if not name:
        errs.add("name", "Name is required.")
    if level_type not in LEVEL_TYPES:
        errs.add("level_type", f"Level type must be one of: {', '.join(LEVEL_TYPES)}.")
    if parent is not None and parent.chart_id != chart.id:
        errs.add("parent_id", "Parent node belongs to a different chart.")
    if code and find_node_by_code(s, chart, code) is not None:
        errs.add("code", f"Node code '{code}' already exists in this chart.")
    errs.raise_if_any()

    node = ClassificationNode(
        chart=chart,
        parent=parent,
        code=code,
        name=name,
        description=(description or "").strip() or None,
        level_type=level_type,
        depth=parent.depth + 1 if parent else 1,
        path=f"{parent.path}{PATH_SEPARATOR}{code}" if parent else code,
    )
    s.add(node)
    s.flush()
    record_event(
        s,
        actor=user,
        action="ccd.node_create",
        entity_type="ClassificationNode",
        entity_id=str(node.id),
        metadata={"chart": chart.code, "code": node.code, "path": node.path, "level_type": level_type},
    )
    return node


def find_node_by_code(s: Session, chart: ClassificationChart, code: str) -> ClassificationNode | None:
    return (
        s.query(ClassificationNode)
        .filter(ClassificationNode.chart_id == chart.id, ClassificationNode.code == (code or "").strip())
        .one_or_none()
    )


def ancestors(node: ClassificationNode) -> list[ClassificationNode]:
    """Ancestors from the root down to the direct parent."""
    out: list[ClassificationNode] = []
    current = node.parent
    while current is not None:
        out.append(current)
        current = current.parent
    out.reverse()
    return out


def descendants(node: ClassificationNode) -> list[ClassificationNode]:
    out: list[ClassificationNode] = []
    stack = list(node.children)
    while stack:
        child = stack.pop()
        out.append(child)
        stack.extend(child.children)
    return out


def _refresh_subtree(node: ClassificationNode) -> None:
    parent = node.parent
    node.depth = parent.depth + 1 if parent else 1
    node.path = f"{parent.path}{PATH_SEPARATOR}{node.code}" if parent else node.code
    for child in node.children:
        _refresh_subtree(child)


def move_node(s: Session, node: ClassificationNode, new_parent: ClassificationNode | None, *, user: "User") -> ClassificationNode:
    """Re-parent a node. Moving under itself or one of its descendants is rejected."""
    ensure_permission(user, "ccd.edit")
    if new_parent is not None:
        if new_parent.id == node.id:
            raise ValidationError("A node cannot be its own parent.", field="parent_id")
        if any(d.id == new_parent.id for d in descendants(node)):
            raise ValidationError("A node cannot be moved under one of its descendants.", field="parent_id")
        if new_parent.chart_id != node.chart_id:
            raise ValidationError("Parent node belongs to a different chart.", field="parent_id")

    old_path = node.path
    node.parent = new_parent
    _refresh_subtree(node)
    record_event(
        s,
        actor=user,
        action="ccd.node_move",
        entity_type="ClassificationNode",
        entity_id=str(node.id),
        metadata={"from": old_path, "to": node.path},
    )
    return node


# ---------- TRD schedules ----------

def create_schedule(s: Session, *, code: str, name: str, user: "User", version: str = "1.0") -> RetentionSchedule:
    ensure_permission(user, "retention.edit")
    errs = FieldErrors()
    code = (code or "").strip()
    name = (name or "").strip()
    if not code:
        errs.add("code", "Code is required.")
    if not name:
        errs.add("name", "Name is required.")
    if code and s.query(RetentionSchedule).filter(RetentionSchedule.code == code).one_or_none():
        errs.add("code", f"TRD code '{code}' already exists.")
    errs.raise_if_any()

    schedule = RetentionSchedule(code=code, name=name, version=(version or "1.0").strip(), created_by_user_id=user.id)
    s.add(schedule)
    s.flush()
    record_event(
        s,
        actor=user,
        action="trd.create",
        entity_type="RetentionSchedule",
        entity_id=str(schedule.id),
        metadata={"code": schedule.code, "version": schedule.version},
    )
    return schedule


def activate_schedule(s: Session, schedule: RetentionSchedule, *, user: "User") -> RetentionSchedule:
    """Make this TRD the vigente one; any other vigente TRD is retired."""
    ensure_permission(user, "retention.edit")
    retired = []
    for other in s.query(RetentionSchedule).filter(RetentionSchedule.is_current.is_(True)).all():
        if other.id != schedule.id:
            other.is_current = False
            retired.append(other.code)
    schedule.is_current = True
    schedule.approved_at = schedule.approved_at or datetime.utcnow()
    record_event(
        s,
        actor=user,
        action="trd.activate",
        entity_type="RetentionSchedule",
        entity_id=str(schedule.id),
        metadata={"code": schedule.code, "retired": retired},
    )
    return schedule


def current_schedule(s: Session) -> RetentionSchedule | None:
    return s.query(RetentionSchedule).filter(RetentionSchedule.is_current.is_(True)).one_or_none()


# ---------- Retention entries ----------

def _coerce_years(raw, field_name: str, errs: FieldErrors) -> int | None:
    if isinstance(raw, bool):
        errs.add(field_name, "Must be a whole number of years.")
        return None
    if isinstance(raw, int):
        value = raw
    else:
        text = str(raw if raw is not None else "").strip()
        if not text:
            errs.add(field_name, "Years are required.")
            return None
        try:
            value = int(text)
        except ValueError:
            errs.add(field_name, "Must be a whole number of years.")
            return None
    if value < 0:
        errs.add(field_name, "Years cannot be negative.")
        return None
    return value


def normalize_supports(supports: Iterable[str] | dict[str, bool] | None) -> dict[str, bool]:
    if isinstance(supports, dict):
        picked = {k for k, v in supports.items() if v}
    else:
        picked = {str(x).strip().lower() for x in (supports or [])}
    return {k: k in picked for k in SUPPORT_KEYS}


def validate_retention_payload(
    *,
    ag_years,
    ac_years,
    disposition: str | None,
    supports,
) -> tuple[int, int, str, dict[str, bool]]:
    errs = FieldErrors()
    ag = _coerce_years(ag_years, "ag_years", errs)
    ac = _coerce_years(ac_years, "ac_years", errs)
    disp = (disposition or "").strip().upper()
    if disp not in DISPOSITIONS:
        errs.add("disposition", f"Disposition must be one of: {', '.join(DISPOSITIONS)}.")
    flags = normalize_supports(supports)
    unknown = set()
    if not isinstance(supports, dict):
        unknown = {str(x).strip().lower() for x in (supports or [])} - set(SUPPORT_KEYS)
    if unknown:
        errs.add("supports", f"Unknown support(s): {', '.join(sorted(unknown))}.")
    if not any(flags.values()):
        errs.add("supports", "At least one support (fisico, electronico, hibrido) is required.")
    errs.raise_if_any()
    return ag, ac, disp, flags  # type: ignore[return-value]


def get_retention(s: Session, schedule: RetentionSchedule, node: ClassificationNode) -> RetentionEntry | None:
    return (
        s.query(RetentionEntry)
        .filter(RetentionEntry.schedule_id == schedule.id, RetentionEntry.node_id == node.id)
        .one_or_none()
    )


def set_retention(
    s: Session,
    schedule: RetentionSchedule,
    node: ClassificationNode,
    *,
    ag_years,
    ac_years,
    disposition: str,
    supports,
    procedure: str | None,
    user: "User",
    observations: str | None = None,
) -> RetentionEntry:
    """Create or replace the single retention entry for (schedule, node)."""
    ensure_permission(user, "retention.edit")
    ag, ac, disp, flags = validate_retention_payload(
        ag_years=ag_years, ac_years=ac_years, disposition=disposition, supports=supports
    )

    now = datetime.utcnow()
    entry = get_retention(s, schedule, node)
    created = entry is None
    before = None
    if entry is None:
        entry = RetentionEntry(schedule_id=schedule.id, node_id=node.id, created_at=now, created_by_user_id=user.id)
        s.add(entry)
    else:
        before = {
            "ag_years": entry.ag_years,
            "ac_years": entry.ac_years,
            "disposition": entry.disposition,
            "supports": entry.supports,
        }

    entry.ag_years = ag
    entry.ac_years = ac
    entry.disposition = disp
    entry.support_physical = flags["fisico"]
    entry.support_electronic = flags["electronico"]
    entry.support_hybrid = flags["hibrido"]
    entry.procedure = (procedure or "").strip() or None
    entry.observations = (observations or "").strip() or None
    entry.updated_at = now
    entry.updated_by_user_id = user.id
    s.flush()

    record_event(
        s,
        actor=user,
        action="retention.set",
        entity_type="RetentionEntry",
        entity_id=str(entry.id),
        metadata={
            "trd": schedule.code,
            "node": node.code,
            "created": created,
            "before": before,
            "after": {"ag_years": ag, "ac_years": ac, "disposition": disp, "supports": flags},
        },
    )
    return entry


def remove_retention(
    s: Session,
    schedule: RetentionSchedule,
    node: ClassificationNode,
    *,
    user: "User",
    confirmed: bool,
) -> None:
    """Delete the entry for (schedule, node). Documents already classified are not touched."""
    ensure_permission(user, "retention.edit")
    if not confirmed:
        raise ValidationError("Deleting a retention entry must be confirmed.", field="confirm")
    entry = get_retention(s, schedule, node)
    if entry is None:
        raise NotFoundError(f"No retention entry for node '{node.code}' in TRD '{schedule.code}'.")
    snapshot = {"ag_years": entry.ag_years, "ac_years": entry.ac_years, "disposition": entry.disposition}
    s.delete(entry)
    s.flush()
    record_event(
        s,
        actor=user,
        action="retention.remove",
        entity_type="RetentionEntry",
        entity_id=str(entry.id),
        metadata={"trd": schedule.code, "node": node.code, "removed": snapshot},
    )


def resolve_for_node(s: Session, schedule: RetentionSchedule, node: ClassificationNode) -> RetentionEntry:
    """Nearest entry walking up from node (inclusive) to the CCD root."""
    current: ClassificationNode | None = node
    while current is not None:
        entry = get_retention(s, schedule, current)
        if entry is not None:
            return entry
        current = current.parent
    raise NotFoundError(
        f"No retention policy for node '{node.code}' or any of its ancestors in TRD '{schedule.code}'."
    )


def resolve_for_document(
    s: Session,
    doc: "Document",
    *,
    schedule: RetentionSchedule | None = None,
) -> RetentionEntry:
    schedule = schedule or current_schedule(s)
    if schedule is None:
        raise NotFoundError("There is no vigente TRD.")
    node = doc.case_file.classification_node if doc.case_file else None
    if node is None:
        raise NotFoundError(f"Case file of document '{doc.code}' is not classified in the CCD.")
    return resolve_for_node(s, schedule, node)


def _add_years(start: date, years: int) -> date:
    try:
        return start.replace(year=start.year + years)
    except ValueError:
        # 29 Feb -> 28 Feb on non-leap target years
        return start.replace(year=start.year + years, day=28)


def disposition_due_date(entry: RetentionEntry, start: date | datetime) -> date:
    if isinstance(start, datetime):
        start = start.date()
    return _add_years(start, entry.total_years)


def archive_transfer_date(entry: RetentionEntry, start: date | datetime) -> date:
    """End of the archivo de gestion period (transfer to archivo central)."""
    if isinstance(start, datetime):
        start = start.date()
    return _add_years(start, entry.ag_years)


@dataclass
class DispositionDue:
    document_id: int
    document_code: str
    disposition: str
    due_date: date
    node_code: str


@dataclass
class DispositionReport:
    due: list[DispositionDue] = field(default_factory=list)
    unresolved: list[str] = field(default_factory=list)  # document codes without policy


def documents_due_for_disposition(s: Session, *, today: date | None = None) -> DispositionReport:
    """Non-obsolete documents whose retention time under the vigente TRD has run out."""
    from app.sgdea.modules.document_control.models import Document

    today = today or date.today()
    schedule = current_schedule(s)
    report = DispositionReport()
    if schedule is None:
        return report

    docs = s.query(Document).filter(Document.state != "obsoleto").order_by(Document.id.asc()).all()
    for doc in docs:
        try:
            entry = resolve_for_document(s, doc, schedule=schedule)
        except NotFoundError:
            report.unresolved.append(doc.code)
            continue
        due = disposition_due_date(entry, doc.created_at)
        if due <= today:
            report.due.append(
                DispositionDue(
                    document_id=doc.id,
                    document_code=doc.code,
                    disposition=entry.disposition,
                    due_date=due,
                    node_code=entry.node.code,
                )
            )
    if report.unresolved:
        logger.info("Disposition report: %d document(s) without retention policy", len(report.unresolved))
    return report


# ---------- Import ----------

@dataclass
class ImportResult:
    processed: int = 0
    succeeded: int = 0
    errors: list = field(default_factory=list)  # list[RowError]

    @property
    def failed(self) -> int:
        return len(self.errors)


def import_retention_rows(
    s: Session,
    schedule: RetentionSchedule,
    chart: ClassificationChart,
    rows: list[dict],
    *,
    user: "User",
    parse_errors: list | None = None,
) -> ImportResult:
    """
    Apply parsed TRD rows one by one. Each row runs in its own SAVEPOINT so a
    bad row is reported without discarding the good ones.
    """
    from .parsers import RowError

    ensure_permission(user, "retention.import")
    result = ImportResult(errors=list(parse_errors or []))
    result.processed = len(rows) + len(result.errors)

    for row in rows:
        row_number = row.get("row_number", 0)
        node = find_node_by_code(s, chart, row.get("code") or "")
        if node is None:
            result.errors.append(RowError(row_number, f"Node '{row.get('code')}' does not exist in CCD '{chart.code}'."))
            continue
        try:
            with s.begin_nested():
                set_retention(
                    s,
                    schedule,
                    node,
                    ag_years=row.get("ag_years"),
                    ac_years=row.get("ac_years"),
                    disposition=row.get("disposition") or "",
                    supports=row.get("supports") or [],
                    procedure=row.get("procedure"),
                    observations=row.get("observations"),
                    user=user,
                )
        except ValidationError as e:
            result.errors.append(RowError(row_number, "; ".join(e.messages())))
            continue
        result.succeeded += 1

    result.errors.sort(key=lambda err: err.row_number)
    record_event(
        s,
        actor=user,
        action="retention.import",
        entity_type="RetentionSchedule",
        entity_id=str(schedule.id),
        metadata={"chart": chart.code, "processed": result.processed, "succeeded": result.succeeded, "failed": result.failed},
    )
    if result.errors:
        logger.warning("TRD import into %s: %d row(s) rejected", schedule.code, result.failed)
    return result
