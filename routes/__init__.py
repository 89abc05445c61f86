from .health import health_bp
from .auth import auth_bp
from .services import services_bp
from .booking import booking_bp
from .payments import payments_bp
from .webhooks import webhooks_bp
