from .auth import User, SessionToken
from .catalog import Product, ProductSession
from .athletes import Athlete, CartItem
from .payments import Payment, PaymentAthlete, WebhookEvent

__all__ = [
    'User', 'SessionToken',
    'Product', 'ProductSession',
    'Athlete', 'CartItem',
    'Payment', 'PaymentAthlete', 'WebhookEvent',
]
