from .health import health_bp
from .reservations import reservations_bp
from .payments import payments_bp
from .stripe_webhook import webhook_bp

__all__ = ["health_bp", "reservations_bp", "payments_bp", "webhook_bp"]
