from .checkout import CheckoutSession, CheckoutEvent
from .subscription import Subscription
from .settings import GatewayConfig

__all__ = [
    'CheckoutSession', 'CheckoutEvent',
    'Subscription',
    'GatewayConfig',
]
