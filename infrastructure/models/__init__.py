"""Infrastructure models package exports."""
from .base import Base, metadata
from .user import UserModel
from .enrollment import ApplicationModel, EnrollmentModel
from .payment import PaymentModel, RefundModel

__all__ = [
    "Base",
    "metadata",
    "UserModel",
    "ApplicationModel",
    "EnrollmentModel",
    "PaymentModel",
    "RefundModel",
]
