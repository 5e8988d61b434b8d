from .health import health_bp
from .booking import booking_bp
from .payments import payments_bp
from .stripe_webhook import webhook_bp
from .promo import promo_bp
from .audit_logs import audit_bp
