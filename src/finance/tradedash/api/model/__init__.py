"""
Database Models

SQLAlchemy ORM models for the dashboard API. All tables hang off the shared `Base` declared in base.py.

Key Models:
- users.py: User accounts and linked external identities
- providers.py: Authentication provider catalogue (local, google, ...)
- tokens.py: Session and provider tokens, token lifetimes
- sessions.py: Browser sessions issued after OAuth login
- audit.py: Security audit trail
- health.py: In-process health gauge (not persisted)

Importing this package registers every table on `Base.metadata`, which is what tests use to create the
schema.
"""

from finance.tradedash.api.model.audit import AuditLog  # noqa: F401
from finance.tradedash.api.model.providers import Provider  # noqa: F401
from finance.tradedash.api.model.sessions import UserSession  # noqa: F401
from finance.tradedash.api.model.tokens import Token  # noqa: F401
from finance.tradedash.api.model.users import LinkedAccount, User  # noqa: F401
