# passkeys/db/base.py
"""
Passkeys - SQLAlchemy Base registry
===================================

Import all ORM models so their tables are registered on `Base.metadata`
(Alembic autogeneration, `create_all` in tests).

Keep this file import-only; no runtime logic.
"""

from passkeys.db.base_class import Base
from passkeys.db.models.passkey_credential import PasskeyCredential

__all__ = ["Base", "PasskeyCredential"]
