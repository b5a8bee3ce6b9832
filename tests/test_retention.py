import io
from datetime import date, datetime

import pytest
from openpyxl import Workbook
from werkzeug.security import generate_password_hash

from app.sgdea import create_app
from app.sgdea.db import session_scope
from app.sgdea.errors import NotFoundError, PermissionDeniedError, ValidationError
from app.sgdea.models import AuditEvent, Base, Permission, Role, User
from app.sgdea.modules.case_files.models import CaseFile
from app.sgdea.modules.document_control.models import Document
from app.sgdea.modules.retention.models import (
    ClassificationChart,
    ClassificationNode,
    RetentionEntry,
    RetentionSchedule,
)
from app.sgdea.modules.retention.parsers import parse_retention_csv, parse_retention_file, parse_retention_xlsx
from app.sgdea.modules.retention.service import (
    activate_schedule,
    ancestors,
    archive_transfer_date,
    create_chart,
    create_node,
    create_schedule,
    current_schedule,
    descendants,
    disposition_due_date,
    documents_due_for_disposition,
    find_node_by_code,
    import_retention_rows,
    move_node,
    remove_retention,
    resolve_for_document,
    resolve_for_node,
    set_retention,
)

ARCHIVIST_PERMISSIONS = (
    "admin.view",
    "retention.view",
    "retention.edit",
    "retention.import",
    "ccd.edit",
)


def _make_app(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("STORAGE_BACKEND", "local")
    monkeypatch.setenv("STORAGE_LOCAL_ROOT", str(tmp_path / "storage"))

    app = create_app()
    Base.metadata.create_all(bind=app.extensions["sqlalchemy_engine"])

    with session_scope(app) as s:
        perms = [Permission(key=k, name=k) for k in ARCHIVIST_PERMISSIONS]
        archivist = Role(key="archivist", name="Archivist")
        archivist.permissions.extend(perms)
        viewer = Role(key="viewer", name="Viewer")
        viewer.permissions.extend([p for p in perms if p.key in ("admin.view", "retention.view")])
        u = User(email="archivo@example.com", password_hash=generate_password_hash("pw"), is_active=True)
        u.roles.append(archivist)
        v = User(email="viewer@example.com", password_hash=generate_password_hash("pw"), is_active=True)
        v.roles.append(viewer)
        s.add_all(perms + [archivist, viewer, u, v])
    return app


@pytest.fixture()
def app(tmp_path, monkeypatch):
    app = _make_app(tmp_path, monkeypatch)
    with app.app_context():
        yield app


@pytest.fixture()
def s(app):
    session = app.extensions["sqlalchemy_sessionmaker"]()
    yield session
    session.close()


def _user(s, email="archivo@example.com") -> User:
    return s.query(User).filter(User.email == email).one()


@pytest.fixture()
def tree(s):
    """CCD with 100 > 100.1 > 100.1.1 and a second root 200, plus an empty vigente TRD."""
    u = _user(s)
    chart = create_chart(s, code="CCD-2026", name="Cuadro de clasificacion", user=u)
    fondo = create_node(s, chart, code="100", name="Gerencia", level_type="fondo", user=u)
    seccion = create_node(s, chart, code="100.1", name="Contratos", level_type="seccion", parent=fondo, user=u)
    serie = create_node(s, chart, code="100.1.1", name="Contratos de obra", level_type="serie", parent=seccion, user=u)
    otro = create_node(s, chart, code="200", name="Talento humano", level_type="fondo", user=u)
    schedule = create_schedule(s, code="TRD-2026", name="TRD general", user=u)
    activate_schedule(s, schedule, user=u)
    s.commit()
    return {"chart": chart, "fondo": fondo, "seccion": seccion, "serie": serie, "otro": otro, "schedule": schedule}


def _set(s, tree, node_key="seccion", **overrides):
    kwargs = dict(ag_years=2, ac_years=8, disposition="CT", supports=["fisico"], procedure="Conservar", user=_user(s))
    kwargs.update(overrides)
    return set_retention(s, tree["schedule"], tree[node_key], **kwargs)


def _document(s, node, *, created_at: datetime, code: str, state: str = "activo") -> Document:
    u = _user(s)
    cf = CaseFile(code=f"EXP-{code}", title=f"Expediente {code}", status="abierto", classification_node=node)
    s.add(cf)
    s.flush()
    doc = Document(
        code=code,
        title=code,
        case_file_id=cf.id,
        support_type="fisico",
        confidentiality="interna",
        state=state,
        signature_status="sin_firmar",
        created_by_user_id=u.id,
        created_at=created_at,
        modified_at=created_at,
    )
    s.add(doc)
    s.flush()
    return doc


# ---------- CCD ----------

def test_tree_paths_and_traversal(s, tree):
    assert tree["serie"].path == "100 > 100.1 > 100.1.1"
    assert tree["serie"].depth == 3
    assert [n.code for n in ancestors(tree["serie"])] == ["100", "100.1"]
    assert {n.code for n in descendants(tree["fondo"])} == {"100.1", "100.1.1"}
    assert find_node_by_code(s, tree["chart"], "100.1").id == tree["seccion"].id
    assert find_node_by_code(s, tree["chart"], "999") is None


def test_node_validation(s, tree):
    u = _user(s)
    with pytest.raises(ValidationError) as exc:
        create_node(s, tree["chart"], code="100", name="", level_type="carpeta", user=u)
    assert set(exc.value.errors) == {"code", "name", "level_type"}


def test_move_node_rejects_cycles(s, tree):
    u = _user(s)
    with pytest.raises(ValidationError):
        move_node(s, tree["fondo"], tree["serie"], user=u)
    with pytest.raises(ValidationError):
        move_node(s, tree["seccion"], tree["seccion"], user=u)
    assert tree["fondo"].parent is None


def test_move_node_refreshes_subtree_paths(s, tree):
    move_node(s, tree["seccion"], tree["otro"], user=_user(s))
    s.commit()

    assert tree["seccion"].path == "200 > 100.1"
    assert tree["serie"].path == "200 > 100.1 > 100.1.1"
    assert tree["serie"].depth == 3
    assert [n.code for n in ancestors(tree["serie"])] == ["200", "100.1"]
    assert s.query(AuditEvent).filter(AuditEvent.action == "ccd.node_move").count() == 1


def test_ccd_edits_require_permission(s, tree):
    with pytest.raises(PermissionDeniedError):
        create_node(s, tree["chart"], code="300", name="x", level_type="fondo", user=_user(s, "viewer@example.com"))


# ---------- TRD ----------

def test_only_one_schedule_is_vigente(s, tree):
    u = _user(s)
    newer = create_schedule(s, code="TRD-2027", name="TRD actualizada", version="2.0", user=u)
    activate_schedule(s, newer, user=u)
    s.commit()

    assert current_schedule(s).code == "TRD-2027"
    assert tree["schedule"].is_current is False


def test_set_retention_upserts_a_single_entry(s, tree):
    first = _set(s, tree)
    s.commit()
    second = _set(s, tree, ag_years="3", ac_years="7", disposition="s", supports={"fisico": True, "electronico": True})
    s.commit()

    entries = s.query(RetentionEntry).filter(RetentionEntry.node_id == tree["seccion"].id).all()
    assert len(entries) == 1
    assert first.id == second.id
    assert second.ag_years == 3 and second.ac_years == 7
    assert second.total_years == 10
    assert second.disposition == "S"
    assert second.supports == {"fisico": True, "electronico": True, "hibrido": False}
    assert s.query(AuditEvent).filter(AuditEvent.action == "retention.set").count() == 2


def test_invalid_retention_persists_nothing(s, tree):
    with pytest.raises(ValidationError) as exc:
        _set(s, tree, disposition="X")
    assert "disposition" in exc.value.errors

    with pytest.raises(ValidationError) as exc:
        _set(s, tree, ag_years="-1", ac_years="dos", supports=[])
    assert set(exc.value.errors) == {"ag_years", "ac_years", "supports"}

    with pytest.raises(ValidationError) as exc:
        _set(s, tree, supports=["papel"])
    assert "supports" in exc.value.errors

    s.rollback()
    assert s.query(RetentionEntry).count() == 0


def test_remove_retention_requires_confirmation(s, tree):
    u = _user(s)
    _set(s, tree)
    s.commit()

    with pytest.raises(ValidationError):
        remove_retention(s, tree["schedule"], tree["seccion"], user=u, confirmed=False)
    assert s.query(RetentionEntry).count() == 1

    remove_retention(s, tree["schedule"], tree["seccion"], user=u, confirmed=True)
    s.commit()
    assert s.query(RetentionEntry).count() == 0

    with pytest.raises(NotFoundError):
        remove_retention(s, tree["schedule"], tree["seccion"], user=u, confirmed=True)


def test_resolve_walks_up_to_the_nearest_policy(s, tree):
    _set(s, tree, node_key="seccion", disposition="CT")
    s.commit()

    assert resolve_for_node(s, tree["schedule"], tree["serie"]).node_id == tree["seccion"].id

    _set(s, tree, node_key="serie", disposition="E", ag_years=1, ac_years=1)
    s.commit()
    assert resolve_for_node(s, tree["schedule"], tree["serie"]).disposition == "E"

    with pytest.raises(NotFoundError):
        resolve_for_node(s, tree["schedule"], tree["fondo"])
    with pytest.raises(NotFoundError):
        resolve_for_node(s, tree["schedule"], tree["otro"])


def test_resolve_for_document(s, tree):
    _set(s, tree)
    doc = _document(s, tree["serie"], created_at=datetime(2020, 5, 4), code="D-1")
    s.commit()
    assert resolve_for_document(s, doc).node_id == tree["seccion"].id

    tree["schedule"].is_current = False
    s.commit()
    with pytest.raises(NotFoundError):
        resolve_for_document(s, doc)


def test_due_dates():
    entry = RetentionEntry(ag_years=2, ac_years=8, disposition="CT")
    assert disposition_due_date(entry, date(2020, 1, 15)) == date(2030, 1, 15)
    assert archive_transfer_date(entry, datetime(2020, 1, 15, 10, 30)) == date(2022, 1, 15)

    leap = RetentionEntry(ag_years=1, ac_years=0, disposition="E")
    assert disposition_due_date(leap, date(2024, 2, 29)) == date(2025, 2, 28)
    four = RetentionEntry(ag_years=2, ac_years=2, disposition="E")
    assert disposition_due_date(four, date(2024, 2, 29)) == date(2028, 2, 29)


def test_documents_due_for_disposition(s, tree):
    _set(s, tree, ag_years=1, ac_years=4, disposition="E")
    due = _document(s, tree["serie"], created_at=datetime(2018, 3, 1), code="OLD-1")
    _document(s, tree["serie"], created_at=datetime(2022, 3, 1), code="NEW-1")
    _document(s, tree["serie"], created_at=datetime(2010, 3, 1), code="GONE-1", state="obsoleto")
    _document(s, tree["otro"], created_at=datetime(2010, 3, 1), code="LOOSE-1")
    s.commit()

    report = documents_due_for_disposition(s, today=date(2023, 3, 1))
    assert [d.document_code for d in report.due] == ["OLD-1"]
    assert report.due[0].document_id == due.id
    assert report.due[0].due_date == date(2023, 3, 1)
    assert report.due[0].disposition == "E"
    assert report.due[0].node_code == "100.1"
    assert report.unresolved == ["LOOSE-1"]

    assert documents_due_for_disposition(s, today=date(2023, 2, 28)).due == []


# ---------- Import ----------

CSV_TEMPLATE = (
    "Codigo,AG,AC,Disposicion,Soporte Fisico,Soporte Electronico,Procedimiento\n"
    "100.1,2,8,CT,X,,Conservar en archivo historico\n"
    "100.1.1,1,4,X,X,,Disposicion mal diligenciada\n"
    "999,1,1,E,X,,Nodo inexistente\n"
    "200,3,7,S,X,X,Muestreo\n"
).encode("utf-8")


def test_parse_csv_template():
    rows, errors = parse_retention_csv(CSV_TEMPLATE)
    assert errors == []
    assert [r["code"] for r in rows] == ["100.1", "100.1.1", "999", "200"]
    assert rows[0]["row_number"] == 2
    assert rows[3]["supports"] == ["fisico", "electronico"]


def test_import_applies_good_rows_and_reports_bad_ones(s, tree):
    rows, parse_errors = parse_retention_file("trd.csv", CSV_TEMPLATE)
    result = import_retention_rows(s, tree["schedule"], tree["chart"], rows, user=_user(s), parse_errors=parse_errors)
    s.commit()

    assert result.processed == 4
    assert result.succeeded == 2
    assert result.failed == 2
    assert [e.row_number for e in result.errors] == [3, 4]
    assert "Disposition" in result.errors[0].message
    assert "999" in result.errors[1].message

    codes = sorted(e.node.code for e in s.query(RetentionEntry).all())
    assert codes == ["100.1", "200"]
    ev = s.query(AuditEvent).filter(AuditEvent.action == "retention.import").one()
    assert '"failed": 2' in ev.metadata_json


def test_import_xlsx_with_disposition_marks(s, tree):
    wb = Workbook()
    ws = wb.active
    ws.append(["Codigo", "AG", "AC", "CT", "E", "D", "S", "M", "Soporte Fisico", "Soporte Electronico", "Procedimiento"])
    ws.append(["100.1", 2, 8, "X", None, None, None, None, "X", None, "Conservar"])
    ws.append(["100.1.1", 1, 4, None, "X", None, "X", None, "X", None, "Dos marcas"])
    ws.append(["200", 1, 9, None, None, "X", None, None, None, "X", "Digitalizar"])
    buf = io.BytesIO()
    wb.save(buf)

    rows, parse_errors = parse_retention_xlsx(buf.getvalue())
    assert [e.row_number for e in parse_errors] == [3]
    assert "More than one disposition" in parse_errors[0].message

    result = import_retention_rows(s, tree["schedule"], tree["chart"], rows, user=_user(s), parse_errors=parse_errors)
    s.commit()
    assert result.processed == 3
    assert result.succeeded == 2

    by_code = {e.node.code: e for e in s.query(RetentionEntry).all()}
    assert by_code["100.1"].disposition == "CT"
    assert by_code["200"].disposition == "D"
    assert by_code["200"].supports["electronico"] is True


def test_import_rejects_rows_without_retention_years(s, tree):
    data = (
        "Codigo,AG,AC,Disposicion,Soporte Fisico\n"
        "100.1,,8,E,X\n"
        "200,2,,CT,X\n"
        "100,1,3,CT,X\n"
    ).encode("utf-8")
    rows, parse_errors = parse_retention_csv(data)
    assert parse_errors == []

    result = import_retention_rows(s, tree["schedule"], tree["chart"], rows, user=_user(s), parse_errors=parse_errors)
    s.commit()

    assert result.succeeded == 1
    assert [e.row_number for e in result.errors] == [2, 3]
    assert "ag_years: Years are required." in result.errors[0].message
    assert "ac_years: Years are required." in result.errors[1].message
    assert [e.node.code for e in s.query(RetentionEntry).all()] == ["100"]


def test_csv_row_numbers_are_file_lines():
    data = (
        "Codigo,AG,AC,Disposicion,Procedimiento\n"
        "100.1,2,8,CT,Conservar\n"
        "\n"
        "200,1,9,S,\"Seleccionar\nuna muestra\"\n"
        "100.1.1,1,4,X,Mal diligenciada\n"
    ).encode("utf-8")
    rows, errors = parse_retention_csv(data)
    assert errors == []
    assert [(r["code"], r["row_number"]) for r in rows] == [("100.1", 2), ("200", 4), ("100.1.1", 6)]
    assert rows[1]["procedure"] == "Seleccionar\nuna muestra"


def test_unsupported_import_file_type():
    with pytest.raises(ValueError):
        parse_retention_file("trd.pdf", b"%PDF")


def test_import_requires_permission(s, tree):
    rows, _ = parse_retention_csv(CSV_TEMPLATE)
    with pytest.raises(PermissionDeniedError):
        import_retention_rows(s, tree["schedule"], tree["chart"], rows, user=_user(s, "viewer@example.com"))


# ---------- HTTP ----------

@pytest.fixture()
def client(tmp_path, monkeypatch):
    return _make_app(tmp_path, monkeypatch).test_client()


def test_retention_pages(client):
    with client.session_transaction() as sess:
        sess["csrf_token"] = "t"
    r = client.post("/auth/login", data={"email": "archivo@example.com", "password": "pw"})
    assert r.status_code == 302

    r = client.post("/admin/retention/charts/new", data={"csrf_token": "t", "code": "CCD-1", "name": "Cuadro"})
    assert r.status_code == 302
    r = client.post("/admin/retention/schedules/new", data={"csrf_token": "t", "code": "TRD-1", "name": "Tabla"})
    assert r.status_code == 302

    with session_scope(client.application) as s:
        chart_id = s.query(ClassificationChart).one().id
        schedule_id = s.query(RetentionSchedule).one().id

    r = client.post(
        f"/admin/retention/charts/{chart_id}/nodes",
        data={"csrf_token": "t", "code": "100", "name": "Gerencia", "level_type": "fondo"},
    )
    assert r.status_code == 302
    with session_scope(client.application) as s:
        node_id = s.query(ClassificationNode).one().id

    r = client.post(
        f"/admin/retention/schedules/{schedule_id}/entries",
        data={"csrf_token": "t", "node_id": str(node_id), "ag_years": "2", "ac_years": "8", "disposition": "X", "supports": ["fisico"]},
        follow_redirects=True,
    )
    assert r.status_code == 200
    assert b"Disposition must be one of" in r.data

    r = client.post(
        f"/admin/retention/schedules/{schedule_id}/import",
        data={"csrf_token": "t", "chart_id": str(chart_id), "file": (io.BytesIO(b"Codigo,AG,AC,Disposicion,Soporte Fisico\n100,2,8,CT,X\n"), "trd.csv")},
        content_type="multipart/form-data",
        follow_redirects=True,
    )
    assert r.status_code == 200
    assert b"1 of 1 row(s) applied" in r.data

    r = client.post(f"/admin/retention/schedules/{schedule_id}/activate", data={"csrf_token": "t"})
    assert r.status_code == 302

    r = client.get("/admin/retention/disposition?as_of=2030-01-01")
    assert r.status_code == 200

    with session_scope(client.application) as s:
        assert s.query(RetentionEntry).one().disposition == "CT"
