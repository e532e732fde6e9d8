# Import models so that SQLAlchemy metadata includes them on app startup
from .fee_tier import PlatformFeeTier  # noqa: F401
from .tenant import Tenant  # noqa: F401
from .order import Order  # noqa: F401
from .order_item import OrderItem  # noqa: F401
from .order_status_history import OrderStatusHistory  # noqa: F401
from .payment import Payment  # noqa: F401
from .refund import Refund  # noqa: F401
from .webhook_event import WebhookEvent  # noqa: F401
