"""SQLAlchemy models for LessonPass.

All models are imported here so that Alembic's autogenerate can discover
them via Base.metadata. If you add a new model, import it in this file.
"""

from app.models.subscription import SubscriptionRecord
from app.models.user import User

__all__ = [
    "SubscriptionRecord",
    "User",
]
