import io

import pytest
from sqlalchemy.orm.exc import StaleDataError
from werkzeug.security import generate_password_hash

from app.sgdea import create_app
from app.sgdea.db import session_scope
from app.sgdea.errors import (
    ContentIntegrityError,
    InvalidTransitionError,
    PermissionDeniedError,
    StaleRecordError,
    ValidationError,
)
from app.sgdea.models import AuditEvent, Base, Permission, Role, User
from app.sgdea.modules.case_files.models import CaseFile
from app.sgdea.modules.document_control.models import Document, DocumentVersion
from app.sgdea.modules.document_control.service import (
    STATES,
    UploadedFile,
    add_version,
    available_transitions,
    bulk_upload,
    create_document,
    delete_document,
    iter_versions,
    latest_version,
    next_version_label,
    read_version_content,
    transition_document,
    update_document_metadata,
)
from app.sgdea.storage import LocalStorage

DOC_PERMISSIONS = (
    "admin.view",
    "docs.view",
    "docs.create",
    "docs.edit",
    "docs.transition",
    "docs.delete",
    "docs.download",
    "docs.bulk_upload",
    "case_files.view",
    "case_files.create",
)


def _make_app(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("STORAGE_BACKEND", "local")
    monkeypatch.setenv("STORAGE_LOCAL_ROOT", str(tmp_path / "storage"))

    app = create_app()
    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)

    with session_scope(app) as s:
        perms = [Permission(key=k, name=k) for k in DOC_PERMISSIONS]
        admin = Role(key="admin", name="Administrator")
        admin.permissions.extend(perms)
        reader = Role(key="reader", name="Reader")
        reader.permissions.extend([p for p in perms if p.key in ("admin.view", "docs.view")])
        u = User(email="admin@example.com", name="Ana Admin", password_hash=generate_password_hash("pw"), is_active=True)
        u.roles.append(admin)
        ro = User(email="reader@example.com", password_hash=generate_password_hash("pw"), is_active=True)
        ro.roles.append(reader)
        s.add_all(perms + [admin, reader, u, ro])
        s.flush()
        s.add(CaseFile(id=42, code="EXP-042", title="Contratos 2026", status="abierto", created_by_user_id=u.id))
        s.add(CaseFile(id=7, code="EXP-007", title="Cerrado", status="cerrado", created_by_user_id=u.id))
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


@pytest.fixture()
def client(tmp_path, monkeypatch):
    return _make_app(tmp_path, monkeypatch).test_client()


def _user(s, email="admin@example.com") -> User:
    return s.query(User).filter(User.email == email).one()


def _new_doc(s, user, **overrides) -> Document:
    payload = {"title": "Contrato de arrendamiento", "case_file_id": 42, "support_type": "electronico"}
    payload.update(overrides)
    return create_document(s, payload, user)


# ---------- create ----------

def test_create_document_defaults_to_borrador_and_audits(s):
    u = _user(s)
    doc = _new_doc(s, u, code="Contrato-001")
    s.commit()

    assert doc.code == "CONTRATO-001"
    assert doc.state == "borrador"
    assert doc.signature_status == "sin_firmar"
    assert doc.confidentiality == "interna"
    assert doc.case_file.code == "EXP-042"
    assert doc.lock_version == 1

    ev = s.query(AuditEvent).filter(AuditEvent.action == "doc.create").one()
    assert ev.entity_id == str(doc.id)
    assert ev.actor_user_email == "admin@example.com"


def test_create_document_generates_code_when_missing(s):
    doc = _new_doc(s, _user(s))
    s.commit()
    assert doc.code.startswith("DOC-")
    assert doc.code.endswith(f"{doc.id:06d}")


def test_create_document_reports_every_bad_field_and_persists_nothing(s):
    u = _user(s)
    with pytest.raises(ValidationError) as exc:
        create_document(s, {"title": "", "case_file_id": 999, "support_type": "papiro"}, u)
    s.rollback()

    assert set(exc.value.errors) == {"title", "support_type", "case_file_id"}
    assert s.query(Document).count() == 0
    assert s.query(AuditEvent).count() == 0


def test_create_document_in_closed_case_file_is_rejected(s):
    with pytest.raises(ValidationError) as exc:
        _new_doc(s, _user(s), case_file_id=7)
    assert "case_file_id" in exc.value.errors


def test_create_document_requires_permission(s):
    with pytest.raises(PermissionDeniedError):
        _new_doc(s, _user(s, "reader@example.com"))


def test_duplicate_code_is_a_field_error(s):
    u = _user(s)
    _new_doc(s, u, code="DUP-1")
    s.commit()
    with pytest.raises(ValidationError) as exc:
        _new_doc(s, u, code="dup-1")
    assert "code" in exc.value.errors


# ---------- lifecycle ----------

def test_transitions_follow_the_lifecycle_graph(s):
    u = _user(s)
    doc = _new_doc(s, u)
    s.commit()

    assert available_transitions(doc) == ["pendiente", "obsoleto"]
    with pytest.raises(InvalidTransitionError):
        transition_document(s, doc, "aprobado", u)
    assert doc.state == "borrador"

    for target in ("pendiente", "aprobado", "activo", "archivado"):
        transition_document(s, doc, target, u, reason=f"to {target}")
        assert doc.state in STATES
    s.commit()
    assert doc.state == "archivado"

    transition_document(s, doc, "obsoleto", u, reason="Superseded")
    s.commit()
    assert available_transitions(doc) == []
    with pytest.raises(InvalidTransitionError):
        transition_document(s, doc, "borrador", u)

    events = s.query(AuditEvent).filter(AuditEvent.action == "doc.transition").all()
    assert len(events) == 5


def test_any_live_state_can_be_made_obsolete(s):
    u = _user(s)
    doc = _new_doc(s, u)
    transition_document(s, doc, "obsoleto", u, reason="Created by mistake")
    s.commit()
    assert doc.state == "obsoleto"


def test_unknown_state_is_a_validation_error(s):
    u = _user(s)
    doc = _new_doc(s, u)
    with pytest.raises(ValidationError) as exc:
        transition_document(s, doc, "publicado", u)
    assert "state" in exc.value.errors


def test_transition_requires_permission(s):
    doc = _new_doc(s, _user(s))
    s.commit()
    with pytest.raises(PermissionDeniedError):
        transition_document(s, doc, "pendiente", _user(s, "reader@example.com"))


def test_stale_lock_version_is_rejected(s):
    u = _user(s)
    doc = _new_doc(s, u, code="LOCK-1")
    s.commit()
    seen = doc.lock_version

    transition_document(s, doc, "pendiente", u, expected_lock_version=seen)
    s.commit()
    assert doc.lock_version == seen + 1

    with pytest.raises(StaleRecordError):
        transition_document(s, doc, "aprobado", u, expected_lock_version=seen)
    assert doc.state == "pendiente"


def test_concurrent_writers_do_not_overwrite_each_other(app, s):
    u = _user(s)
    doc = _new_doc(s, u, code="RACE-1")
    s.commit()

    other = app.extensions["sqlalchemy_sessionmaker"]()
    try:
        stale = other.get(Document, doc.id)
        other.commit()  # keeps the loaded state, releases the read transaction

        update_document_metadata(s, doc, {"title": "Edited first"}, u)
        s.commit()

        stale.title = "Edited second"
        with pytest.raises(StaleDataError):
            other.flush()
        other.rollback()
    finally:
        other.close()

    s.expire_all()
    assert s.get(Document, doc.id).title == "Edited first"


def test_update_metadata_records_changes(s):
    u = _user(s)
    doc = _new_doc(s, u)
    s.commit()
    update_document_metadata(s, doc, {"title": "Nuevo titulo", "confidentiality": "reservada"}, u)
    s.commit()

    assert doc.title == "Nuevo titulo"
    assert doc.confidentiality == "reservada"
    ev = s.query(AuditEvent).filter(AuditEvent.action == "doc.update").one()
    assert "confidentiality" in ev.metadata_json


# ---------- versions ----------

def test_next_version_label():
    assert next_version_label(None) == "1.0"
    assert next_version_label("1.0") == "1.1"
    assert next_version_label("1.9") == "1.10"
    assert next_version_label("1.4", major=True) == "2.0"
    with pytest.raises(ValueError):
        next_version_label("v-final")


def test_adding_versions_never_changes_earlier_ones(s):
    u = _user(s)
    doc = _new_doc(s, u)
    v1 = add_version(s, doc, content=b"first", filename="contrato.pdf", user=u)
    s.commit()
    snapshot = (v1.id, v1.label, v1.sha256, v1.size_bytes, v1.storage_key)

    v2 = add_version(s, doc, content=b"second draft", filename="contrato.pdf", user=u)
    v3 = add_version(s, doc, content=b"signed copy", filename="contrato.pdf", user=u, major=True)
    s.commit()

    assert [v.label for v in iter_versions(s, doc)] == ["1.0", "1.1", "2.0"]
    assert latest_version(s, doc).id == v3.id
    assert v2.storage_key != v1.storage_key

    s.expire_all()
    again = s.get(DocumentVersion, snapshot[0])
    assert (again.id, again.label, again.sha256, again.size_bytes, again.storage_key) == snapshot
    assert read_version_content(again) == b"first"


def test_versions_cannot_be_edited_or_deleted(s):
    u = _user(s)
    doc = _new_doc(s, u)
    v = add_version(s, doc, content=b"original", filename="a.txt", user=u)
    s.commit()

    v.sha256 = "0" * 64
    with pytest.raises(ContentIntegrityError):
        s.flush()
    s.rollback()

    s.delete(s.get(DocumentVersion, v.id))
    with pytest.raises(ContentIntegrityError):
        s.flush()
    s.rollback()
    assert s.query(DocumentVersion).count() == 1


def test_version_history_is_restartable(s):
    u = _user(s)
    doc = _new_doc(s, u)
    add_version(s, doc, content=b"one", filename="a.txt", user=u)
    s.commit()

    history = iter_versions(s, doc)
    assert len(list(history)) == 1
    assert len(list(history)) == 1

    add_version(s, doc, content=b"two", filename="a.txt", user=u)
    s.commit()
    assert [v.label for v in history] == ["1.0", "1.1"]
    assert len(history) == 2


def test_add_version_rejects_empty_oversize_and_obsolete(app, s):
    u = _user(s)
    doc = _new_doc(s, u)

    with pytest.raises(ValidationError) as exc:
        add_version(s, doc, content=b"", filename="a.txt", user=u)
    assert "file" in exc.value.errors

    with pytest.raises(ValidationError):
        add_version(s, doc, content=b"x" * 11, filename="a.txt", user=u, max_bytes=10)

    transition_document(s, doc, "obsoleto", u)
    with pytest.raises(InvalidTransitionError):
        add_version(s, doc, content=b"late", filename="a.txt", user=u)
    assert s.query(DocumentVersion).count() == 0


def test_delete_only_empty_drafts(s):
    u = _user(s)
    empty = _new_doc(s, u, code="EMPTY-1")
    full = _new_doc(s, u, code="FULL-1")
    add_version(s, full, content=b"data", filename="a.txt", user=u)
    s.commit()

    with pytest.raises(ValidationError):
        delete_document(s, empty, u, reason="")
    with pytest.raises(ValidationError):
        delete_document(s, full, u, reason="Duplicate")

    delete_document(s, empty, u, reason="Duplicate")
    s.commit()
    assert s.query(Document).filter(Document.code == "EMPTY-1").one_or_none() is None
    assert s.query(AuditEvent).filter(AuditEvent.action == "doc.delete").count() == 1


# ---------- bulk upload ----------

def test_bulk_upload_isolates_the_oversize_file(s):
    u = _user(s)
    two_mb = 2 * 1024 * 1024
    files = [
        UploadedFile("acta_01.pdf", b"a" * 1024, "application/pdf"),
        UploadedFile("acta_02.pdf", b"b" * 2048, "application/pdf"),
        UploadedFile("acta_03.pdf", b"c" * (two_mb + 1), "application/pdf"),
        UploadedFile("acta_04.pdf", b"d" * 10, "application/pdf"),
        UploadedFile("acta_05.pdf", b"e" * 10, "application/pdf"),
    ]
    result = bulk_upload(s, files, case_file_id=42, support_type="electronico", user=u)
    s.commit()

    assert result.exitosos == 4
    assert result.errores == 1
    failed = [d for d in result.detalles if not d.ok]
    assert len(failed) == 1
    assert failed[0].filename == "acta_03.pdf"
    assert "2 MB" in failed[0].message
    assert [d.filename for d in result.detalles] == [f.filename for f in files]

    docs = s.query(Document).order_by(Document.id).all()
    assert [d.title for d in docs] == ["acta 01", "acta 02", "acta 04", "acta 05"]
    assert all(d.state == "borrador" for d in docs)
    assert all(latest_version(s, d).label == "1.0" for d in docs)

    as_dict = result.to_dict()
    assert as_dict["exitosos"] == 4 and as_dict["errores"] == 1


def test_bulk_upload_rejects_a_bad_case_file_up_front(s):
    with pytest.raises(ValidationError) as exc:
        bulk_upload(
            s,
            [UploadedFile("a.pdf", b"x")],
            case_file_id=999,
            support_type="electronico",
            user=_user(s),
        )
    assert "case_file_id" in exc.value.errors


def test_bulk_upload_enforces_max_files(app, s):
    app.config["BULK_UPLOAD_MAX_FILES"] = 2
    files = [UploadedFile(f"f{i}.txt", b"x") for i in range(3)]
    with pytest.raises(ValidationError):
        bulk_upload(s, files, case_file_id=42, support_type="fisico", user=_user(s))
    assert s.query(Document).count() == 0


def test_rolled_back_upload_does_not_block_the_same_key(s):
    u = _user(s)
    doc = _new_doc(s, u, code="CTR-9")
    add_version(s, doc, content=b"first try", filename="a.pdf", user=u)
    s.rollback()
    assert s.query(Document).count() == 0

    doc = _new_doc(s, u, code="CTR-9")
    v = add_version(s, doc, content=b"second try", filename="a.pdf", user=u)
    s.commit()
    assert v.label == "1.0"
    assert read_version_content(v) == b"second try"


class _DiskFullStorage(LocalStorage):
    def put_bytes(self, key, data, *, content_type=None):
        if "acta_03" in key:
            raise OSError("disk full")
        super().put_bytes(key, data, content_type=content_type)


def test_bulk_upload_survives_a_storage_failure_on_one_file(s, tmp_path):
    u = _user(s)
    files = [UploadedFile(f"acta_0{i}.pdf", b"x" * (i + 1), "application/pdf") for i in range(1, 6)]
    result = bulk_upload(
        s,
        files,
        case_file_id=42,
        support_type="electronico",
        user=u,
        storage=_DiskFullStorage(tmp_path / "storage"),
    )
    s.commit()

    assert (result.exitosos, result.errores) == (4, 1)
    failed = [d for d in result.detalles if not d.ok]
    assert failed[0].filename == "acta_03.pdf"
    assert "disk full" in failed[0].message
    assert sorted(d.title for d in s.query(Document).all()) == ["acta 01", "acta 02", "acta 04", "acta 05"]
    assert s.query(DocumentVersion).count() == 4


# ---------- HTTP ----------

def _login(client, email="admin@example.com"):
    with client.session_transaction() as sess:
        sess["csrf_token"] = "t"
    r = client.post("/auth/login", data={"email": email, "password": "pw"}, follow_redirects=False)
    assert r.status_code == 302


def test_document_pages_create_transition_and_download(client):
    _login(client)

    r = client.post(
        "/admin/documents/new",
        data={
            "csrf_token": "t",
            "case_file_id": "42",
            "code": "MEMO-9",
            "title": "Memorando",
            "support_type": "electronico",
            "file": (io.BytesIO(b"hello world"), "memo.txt"),
        },
        content_type="multipart/form-data",
        follow_redirects=False,
    )
    assert r.status_code == 302

    app = client.application
    with session_scope(app) as s:
        d = s.query(Document).filter(Document.code == "MEMO-9").one()
        v = s.query(DocumentVersion).filter(DocumentVersion.document_id == d.id).one()
        doc_id, version_id, lock = d.id, v.id, d.lock_version

    r = client.get(f"/admin/documents/{doc_id}")
    assert r.status_code == 200
    assert b"MEMO-9" in r.data

    r = client.post(
        f"/admin/documents/{doc_id}/transition",
        data={"csrf_token": "t", "state": "pendiente", "lock_version": str(lock)},
    )
    assert r.status_code == 302

    # Illegal jump is flashed, not applied
    r = client.post(
        f"/admin/documents/{doc_id}/transition",
        data={"csrf_token": "t", "state": "archivado"},
        follow_redirects=True,
    )
    assert r.status_code == 200
    assert b"Cannot transition" in r.data

    r = client.get(f"/admin/documents/{doc_id}/versions/{version_id}/download")
    assert r.status_code == 200
    assert r.data == b"hello world"

    with session_scope(app) as s:
        assert s.get(Document, doc_id).state == "pendiente"
        actions = [e.action for e in s.query(AuditEvent).order_by(AuditEvent.id.asc()).all()]
        for expected in ("doc.create", "doc.version_add", "doc.transition", "doc.download"):
            assert expected in actions


def test_bulk_upload_page_reports_per_file_results(client):
    _login(client)
    r = client.post(
        "/admin/documents/bulk-upload",
        data={
            "csrf_token": "t",
            "case_file_id": "42",
            "support_type": "electronico",
            "files": [(io.BytesIO(b"one"), "uno.txt"), (io.BytesIO(b""), "vacio.txt")],
        },
        content_type="multipart/form-data",
        headers={"Accept": "application/json"},
    )
    assert r.status_code == 200
    assert r.json["exitosos"] == 1
    assert r.json["errores"] == 1
    assert r.json["detalles"][1]["archivo"] == "vacio.txt"


def test_reader_cannot_create_documents(client):
    _login(client, "reader@example.com")
    r = client.get("/admin/documents/")
    assert r.status_code == 200
    r = client.post("/admin/documents/new", data={"csrf_token": "t", "title": "x"})
    assert r.status_code == 403


def test_download_of_missing_file_is_flashed(client, tmp_path):
    _login(client)
    r = client.post(
        "/admin/documents/new",
        data={
            "csrf_token": "t",
            "case_file_id": "42",
            "code": "MEMO-10",
            "title": "Memorando perdido",
            "support_type": "electronico",
            "file": (io.BytesIO(b"gone soon"), "memo.txt"),
        },
        content_type="multipart/form-data",
    )
    assert r.status_code == 302

    with session_scope(client.application) as s:
        d = s.query(Document).filter(Document.code == "MEMO-10").one()
        v = s.query(DocumentVersion).filter(DocumentVersion.document_id == d.id).one()
        doc_id, version_id, key = d.id, v.id, v.storage_key
    (tmp_path / "storage" / key).unlink()

    r = client.get(f"/admin/documents/{doc_id}/versions/{version_id}/download")
    assert r.status_code == 302
    r = client.get(f"/admin/documents/{doc_id}")
    assert r.status_code == 200
    assert b"is not available" in r.data
