"""
Feature modules live under this package.

Each module owns its models, services and admin routes, and reuses the
platform primitives (auth, RBAC, audit, storage, DB session).
"""
