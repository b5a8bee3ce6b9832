import os
import sys
from pathlib import Path

from werkzeug.security import generate_password_hash

# Ensure repo root is on sys.path when running as a script (Windows-friendly).
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.sgdea.models import Permission, Role, User  # noqa: E402
from scripts._db_utils import script_session  # noqa: E402

PERMISSIONS = (
    ("admin.view", "Admin: view shell"),
    # Documents
    ("docs.view", "Documents: view"),
    ("docs.create", "Documents: create"),
    ("docs.edit", "Documents: edit metadata and add versions"),
    ("docs.transition", "Documents: change state"),
    ("docs.delete", "Documents: delete drafts"),
    ("docs.download", "Documents: download"),
    ("docs.bulk_upload", "Documents: bulk upload"),
    # Signatures
    ("signatures.view", "Signatures: view"),
    ("signatures.sign", "Signatures: sign"),
    ("signatures.verify", "Signatures: verify and refresh status"),
    # Case files
    ("case_files.view", "Case files: view"),
    ("case_files.create", "Case files: create and close"),
    # Retention (CCD / TRD)
    ("retention.view", "Retention: view CCD/TRD"),
    ("retention.edit", "Retention: edit TRD entries"),
    ("retention.import", "Retention: import TRD"),
    ("ccd.edit", "CCD: edit classification chart"),
)

# Role key -> permission keys. "admin" gets everything.
ROLE_PERMISSIONS = {
    "archivist": (
        "admin.view",
        "docs.view",
        "docs.download",
        "case_files.view",
        "retention.view",
        "retention.edit",
        "retention.import",
        "ccd.edit",
        "signatures.view",
    ),
    "producer": (
        "admin.view",
        "docs.view",
        "docs.create",
        "docs.edit",
        "docs.transition",
        "docs.download",
        "docs.bulk_upload",
        "case_files.view",
        "case_files.create",
        "retention.view",
        "signatures.view",
        "signatures.sign",
        "signatures.verify",
    ),
}

ROLE_NAMES = {"admin": "Administrator", "archivist": "Archivist", "producer": "Document producer"}


def seed_only(*, database_url: str | None = None) -> None:
    """
    Seed permissions/roles/admin user in an idempotent way.
    Does NOT overwrite an existing admin user's password.
    """
    admin_email = (os.environ.get("ADMIN_EMAIL") or "admin@sgdea.local").strip().lower()
    admin_password = os.environ.get("ADMIN_PASSWORD") or "change-me"

    with script_session(database_url) as s:
        def ensure_perm(key: str, name: str) -> Permission:
            p = s.query(Permission).filter(Permission.key == key).one_or_none()
            if not p:
                p = Permission(key=key, name=name)
                s.add(p)
            return p

        def ensure_role(key: str) -> Role:
            r = s.query(Role).filter(Role.key == key).one_or_none()
            if not r:
                r = Role(key=key, name=ROLE_NAMES[key])
                s.add(r)
            return r

        perms = {key: ensure_perm(key, name) for key, name in PERMISSIONS}

        role_admin = ensure_role("admin")
        for p in perms.values():
            if p not in role_admin.permissions:
                role_admin.permissions.append(p)

        for role_key, keys in ROLE_PERMISSIONS.items():
            role = ensure_role(role_key)
            for key in keys:
                if perms[key] not in role.permissions:
                    role.permissions.append(perms[key])

        user = s.query(User).filter(User.email == admin_email).one_or_none()
        if not user:
            user = User(
                email=admin_email,
                name="Administrator",
                password_hash=generate_password_hash(admin_password),
                is_active=True,
            )
            s.add(user)
        if role_admin not in user.roles:
            user.roles.append(role_admin)

    print("Initialized database (seed_only).")
    print(f"Admin email: {admin_email}")
    print("Admin password: (from ADMIN_PASSWORD)")


def main() -> None:
    seed_only(database_url=None)


if __name__ == "__main__":
    main()
