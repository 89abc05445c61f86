from datetime import datetime
from decimal import Decimal

import pytest

from app import create_app
from config import Config
from models import db
from models.service import Service
from models.user import Role, User
from security.password import hash_password
from services import booking_lifecycle
from services.lifecycle import Actor
from utils.clock import FixedClock
from utils.roles import UserRole
from utils.seed import seed_roles

PASSWORD = "correct-horse-battery"
NOW = datetime(2030, 1, 1, 9, 0)


class TestConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite://"
    CSRF_ENABLED = False
    BCRYPT_ROUNDS = 4
    LOG_LEVEL = "DEBUG"

    PAYMENT_GATEWAY = "razorpay"
    RAZORPAY_KEY_ID = "rzp_test_key"
    RAZORPAY_KEY_SECRET = "rzp_test_secret"
    RAZORPAY_WEBHOOK_SECRET = "rzp_webhook_secret"

    STRIPE_SECRET_KEY = "sk_test_123"
    STRIPE_WEBHOOK_SECRET = "whsec_test_123"
    STRIPE_SUCCESS_URL = "https://example.test/paid"
    STRIPE_CANCEL_URL = "https://example.test/cancelled"


@pytest.fixture
def app():
    app = create_app(TestConfig)
    with app.app_context():
        db.create_all()
        seed_roles()
        app.extensions["clock"] = FixedClock(NOW)
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def clock(app):
    return app.extensions["clock"]


def make_user(email, role: UserRole) -> User:
    user = User(email=email, password_hash=hash_password(PASSWORD))
    user.roles.append(Role.query.filter_by(name=role.value).first())
    db.session.add(user)
    db.session.commit()
    return user


@pytest.fixture
def customer(app):
    return make_user("customer@example.com", UserRole.USER)


@pytest.fixture
def other_customer(app):
    return make_user("other@example.com", UserRole.USER)


@pytest.fixture
def provider(app):
    return make_user("provider@example.com", UserRole.SERVICE_PROVIDER)


@pytest.fixture
def admin(app):
    return make_user("admin@example.com", UserRole.ADMIN)


@pytest.fixture
def service(provider):
    s = Service(name="Deep cleaning", provider_id=provider.id, unit_price=Decimal("50.00"), currency="USD")
    db.session.add(s)
    db.session.commit()
    return s


@pytest.fixture
def engine(app):
    return booking_lifecycle()


def actor_for(user, role: UserRole) -> Actor:
    return Actor(user_id=user.id, role=role)


@pytest.fixture
def login(app):
    def _login(user):
        client = app.test_client()
        resp = client.post("/auth/login", json={"email": user.email, "password": PASSWORD})
        assert resp.status_code == 200, resp.get_json()
        return client
    return _login
