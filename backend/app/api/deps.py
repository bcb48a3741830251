"""Shared API dependencies — single import point for all routers.

Re-exports database session, authentication and billing dependencies so that
router modules can import everything they need from one place::

    from app.api.deps import get_db, get_current_active_user, require_access
"""

from app.auth.dependencies import (
    get_current_active_user,
    get_current_user,
)
from app.billing.dependencies import (
    get_gateway,
    get_order_service,
    get_payment_verifier,
    get_settings,
    get_stale_sweeper,
    get_trial_service,
    get_webhook_reconciler,
    require_access,
)
from app.database import get_db

__all__ = [
    "get_db",
    "get_current_user",
    "get_current_active_user",
    "get_settings",
    "get_gateway",
    "get_order_service",
    "get_trial_service",
    "get_payment_verifier",
    "get_webhook_reconciler",
    "get_stale_sweeper",
    "require_access",
]
