from .auth import User, SessionToken, ROLE_ADMIN, ROLE_AGENT, VALID_ROLES
from .orders import Account, Order, OrderItem, StatusEvent
from .audit import AuditLog
from .settings import StageThreshold, SystemSetting

__all__ = [
    'User', 'SessionToken', 'ROLE_ADMIN', 'ROLE_AGENT', 'VALID_ROLES',
    'Account', 'Order', 'OrderItem', 'StatusEvent',
    'AuditLog',
    'StageThreshold', 'SystemSetting',
]
