"""
Typed failures raised by the records core.

Every error carries field-keyed messages so the UI can show them next to the
offending input. Messages that do not belong to a single field are stored
under NON_FIELD.
"""
from __future__ import annotations

NON_FIELD = "__all__"


class RecordsError(Exception):
    status_code = 400

    def __init__(self, errors: dict[str, list[str]] | str, *, field: str | None = None) -> None:
        if isinstance(errors, str):
            errors = {field or NON_FIELD: [errors]}
        self.errors: dict[str, list[str]] = {k: list(v) for k, v in errors.items() if v}
        super().__init__("; ".join(self.messages()))

    def messages(self) -> list[str]:
        out: list[str] = []
        for key, msgs in self.errors.items():
            for m in msgs:
                out.append(m if key == NON_FIELD else f"{key}: {m}")
        return out

    def to_dict(self) -> dict:
        return {"ok": False, "error": type(self).__name__, "errors": self.errors}


class ValidationError(RecordsError, ValueError):
    """Missing or malformed input. Nothing was persisted."""


class InvalidTransitionError(RecordsError):
    status_code = 409


class PermissionDeniedError(RecordsError):
    status_code = 403


class DuplicateSignatureError(RecordsError):
    status_code = 409


class NotFoundError(RecordsError):
    status_code = 404


class ContentIntegrityError(RecordsError):
    """Stored content no longer matches the hash recorded for it, or an immutable row was written to."""

    status_code = 409


class StaleRecordError(RecordsError):
    status_code = 409


class FieldErrors:
    """Collects field-keyed messages while validating a payload."""

    def __init__(self) -> None:
        self._errors: dict[str, list[str]] = {}

    def add(self, field: str, message: str) -> None:
        self._errors.setdefault(field, []).append(message)

    def __bool__(self) -> bool:
        return bool(self._errors)

    def raise_if_any(self) -> None:
        if self._errors:
            raise ValidationError(self._errors)
