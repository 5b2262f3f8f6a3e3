"""SQLAlchemy models package."""

from .checkin import CheckIn  # noqa: F401
from .idempotency import ClaimScopeEnum, ClaimStateEnum, IdempotencyClaim  # noqa: F401
from .loyalty import LoyaltyCard  # noqa: F401
from .notification import Notification, NotificationTypeEnum  # noqa: F401
from .subscription import Subscription, SubscriptionStatusEnum  # noqa: F401
from .user import User, UserRoleEnum  # noqa: F401
from .vendor import Vendor, VendorTierEnum  # noqa: F401
