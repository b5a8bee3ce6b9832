from __future__ import annotations

from flask import flash, g

from app.sgdea.errors import RecordsError
from app.sgdea.models import User


def current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def form_bool(value: str | None) -> bool:
    """Checkbox / select values: "1", "on", "true", "yes", "si"."""
    return (value or "").strip().lower() in ("1", "on", "true", "yes", "si", "sí")


def flash_records_error(e: RecordsError) -> None:
    for msg in e.messages():
        flash(msg, "danger")
