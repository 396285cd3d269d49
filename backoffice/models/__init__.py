from .admin_user import AdminUser
from .client import Client, CLIENT_STATUSES, CLIENT_ACTIVE, CLIENT_INACTIVE, CLIENT_ARCHIVED
from .project import Project, PROJECT_STATUSES
from .subscription import (
    Subscription,
    SUBSCRIPTION_STATUSES,
    PRODUCT_TYPES,
    SUB_ACTIVE,
    SUB_PAST_DUE,
    SUB_UNPAID,
    SUB_INCOMPLETE,
    SUB_TRIALING,
    SUB_CANCELED,
)
from .payment import (
    Payment,
    PAYMENT_TYPES,
    PAYMENT_STATUSES,
    PAYMENT_ONE_TIME,
    PAYMENT_SUBSCRIPTION,
    PAYMENT_DEPOSIT,
    PAYMENT_FINAL,
    PAYMENT_REFUND,
    PAY_PENDING,
    PAY_PROCESSING,
    PAY_SUCCEEDED,
    PAY_FAILED,
    PAY_CANCELED,
    PAY_REFUNDED,
)
from .activity_log import ActivityLog
from .webhook_event import WebhookEvent
