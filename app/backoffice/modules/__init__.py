"""
Feature modules live under this package.

Each module owns its routes/models/services and reuses the platform primitives
(auth, RBAC, audit, storage, DB session) from ``app.backoffice``.
"""
