"""Shared API dependencies — single import point for all routers.

Re-exports database session, gateway and authentication dependencies so
that router modules can import everything they need from one place::

    from app.api.deps import get_db, get_current_active_user
"""

from app.auth.dependencies import (
    get_billing_admin,
    get_current_active_user,
    get_current_user,
)
from app.billing.dependencies import get_gateway, require_internal_access
from app.database import get_database, get_db

__all__ = [
    "get_db",
    "get_database",
    "get_gateway",
    "get_current_user",
    "get_current_active_user",
    "get_billing_admin",
    "require_internal_access",
]
