import logging
from datetime import timedelta

from flask import Flask, flash, g, redirect, render_template, request, session, url_for
from dotenv import load_dotenv
from sqlalchemy.orm.exc import StaleDataError

from app.sgdea.config import load_config
from app.sgdea.db import init_db, teardown_db_session
from app.sgdea.errors import RecordsError
from app.sgdea.routes import bp as routes_bp
from app.sgdea.auth import bp as auth_bp, load_current_user
from app.sgdea.admin import bp as admin_bp
from app.sgdea.modules.case_files.admin import bp as case_files_bp
from app.sgdea.modules.document_control.admin import bp as documents_bp
from app.sgdea.modules.signatures.admin import bp as signatures_bp
from app.sgdea.modules.retention.admin import bp as retention_bp


def _configure_logging(app: Flask) -> None:
    level = getattr(logging, str(app.config.get("LOG_LEVEL") or "INFO").upper(), logging.INFO)
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(level=level, format="%(asctime)s %(levelname)s [%(name)s] %(message)s")
    root.setLevel(level)
    app.logger.setLevel(level)


def create_app() -> Flask:
    load_dotenv()
    app = Flask(__name__, template_folder="templates", static_folder="static")
    app.config.from_mapping(load_config())
    app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(hours=8)
    app.config["SESSION_REFRESH_EACH_REQUEST"] = True
    _configure_logging(app)

    # CSRF protection (minimal)
    from app.sgdea.security import ensure_csrf_token, validate_csrf

    @app.context_processor
    def _inject_csrf() -> dict:
        return {"csrf_token": ensure_csrf_token()}

    @app.context_processor
    def _inject_permissions() -> dict:
        from app.sgdea.rbac import user_has_permission

        def has_perm(key: str) -> bool:
            return user_has_permission(getattr(g, "current_user", None), key)

        return {"has_perm": has_perm}

    @app.template_filter("dateformat")
    def _dateformat_filter(value, format: str = "%Y-%m-%d") -> str:
        if value is None:
            return "-"
        if hasattr(value, "strftime"):
            return value.strftime(format)
        return str(value)

    @app.before_request
    def _csrf_guard():
        if request.path.startswith(("/static/", "/health", "/healthz")):
            return None
        ensure_csrf_token()
        session.permanent = True
        if request.method in ("POST", "PUT", "PATCH", "DELETE"):
            # login/logout carry no session state worth forging
            if (request.endpoint or "").startswith("auth."):
                return None
            if not validate_csrf(request):
                return render_template("errors/400.html", message="CSRF token missing or invalid."), 400

    # Production guardrails (fail fast with clear logs)
    env = (app.config.get("ENV") or "").strip().lower()
    if env in ("prod", "production"):
        if not app.config.get("DATABASE_URL") or str(app.config["DATABASE_URL"]).strip() == "":
            raise RuntimeError("DATABASE_URL is required in production.")
        if str(app.config["DATABASE_URL"]).startswith("sqlite"):
            raise RuntimeError("DATABASE_URL must be Postgres in production (not sqlite).")
        if not app.config.get("SECRET_KEY") or str(app.config["SECRET_KEY"]) in ("", "change-me"):
            # also the signature seal key
            raise RuntimeError("SECRET_KEY must be set to a strong value in production (not default).")

    init_db(app)

    if app.config.get("STORAGE_BACKEND") == "s3":
        missing_s3 = [
            key
            for key in ("S3_ENDPOINT", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY")
            if not app.config.get(key)
        ]
        if missing_s3:
            app.logger.error("STORAGE CONFIG ERROR: Missing required S3 env vars: %s", ", ".join(missing_s3))

    app.register_blueprint(routes_bp)
    app.register_blueprint(auth_bp, url_prefix="/auth")
    app.register_blueprint(admin_bp, url_prefix="/admin")
    app.register_blueprint(case_files_bp, url_prefix="/admin/case-files")
    app.register_blueprint(documents_bp, url_prefix="/admin/documents")
    app.register_blueprint(signatures_bp, url_prefix="/admin/documents")
    app.register_blueprint(retention_bp, url_prefix="/admin/retention")

    def _load_user_wrapper():
        if request.path.startswith(("/static/", "/health", "/healthz")):
            g.current_user = None
            return None
        return load_current_user()

    app.before_request(_load_user_wrapper)
    app.teardown_appcontext(teardown_db_session)

    def _back_or(endpoint: str):
        referrer = request.referrer
        if referrer and referrer.startswith(request.host_url):
            return redirect(referrer), 302
        return redirect(url_for(endpoint)), 302

    @app.errorhandler(RecordsError)
    def _err_records(e: RecordsError):
        # Views normally catch these themselves; this is the fallback.
        s = getattr(g, "db_session", None)
        if s is not None:
            s.rollback()
        app.logger.info("%s on %s: %s", type(e).__name__, request.path, e)
        if request.is_json or request.accept_mimetypes.best == "application/json":
            return e.to_dict(), e.status_code
        for msg in e.messages():
            flash(msg, "danger")
        return _back_or("admin.index")

    @app.errorhandler(StaleDataError)
    def _err_stale(e):
        s = getattr(g, "db_session", None)
        if s is not None:
            s.rollback()
        app.logger.warning("Concurrent update rejected on %s (request_id=%s)", request.path, getattr(g, "request_id", None))
        flash("This record was changed by someone else. Reload and try again.", "danger")
        return _back_or("admin.index")

    @app.errorhandler(400)
    def _err_400(e):  # type: ignore[no-redef]
        return render_template("errors/400.html", message=getattr(e, "description", None)), 400

    @app.errorhandler(404)
    def _err_404(e):  # type: ignore[no-redef]
        return render_template("errors/404.html"), 404

    @app.errorhandler(500)
    def _err_500(e):  # type: ignore[no-redef]
        app.logger.exception("Unhandled 500 (request_id=%s)", getattr(g, "request_id", None))
        return render_template("errors/500.html"), 500

    @app.errorhandler(403)
    def _err_403(e):  # type: ignore[no-redef]
        missing = getattr(g, "missing_permission", None)
        if missing:
            app.logger.warning("Forbidden: missing_permission=%s request_id=%s", missing, getattr(g, "request_id", None))
        return render_template("errors/403.html", missing_permission=missing), 403

    @app.errorhandler(413)
    def _err_413(e):  # type: ignore[no-redef]
        flash("Upload too large. Maximum request size is 50MB.", "danger")
        return _back_or("admin.index")

    logging.getLogger(__name__).info("create_app() complete; app ready to serve")

    return app
