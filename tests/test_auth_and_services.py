from models import db
from models.user import Role

from conftest import PASSWORD, make_user
from utils.roles import UserRole


def test_register_and_login(app):
    client = app.test_client()
    resp = client.post("/auth/register", json={
        "email": "New@Example.com", "password": PASSWORD, "role": "service_provider", "full_name": "Pat",
    })
    assert resp.status_code == 201

    assert client.post("/auth/register", json={"email": "new@example.com", "password": PASSWORD}).status_code == 409
    assert client.post("/auth/login", json={"email": "new@example.com", "password": "nope-nope"}).status_code == 401

    resp = client.post("/auth/login", json={"email": "new@example.com", "password": PASSWORD})
    assert resp.status_code == 200

    me = client.get("/auth/me").get_json()["data"]
    assert me["email"] == "new@example.com"
    assert me["role"] == "service_provider"

    assert client.post("/auth/logout").status_code == 200
    assert client.get("/auth/me").status_code == 401


def test_register_rejects_admin_and_weak_passwords(app):
    client = app.test_client()
    assert client.post("/auth/register", json={"email": "a@b.c", "password": PASSWORD, "role": "admin"}).status_code == 403
    assert client.post("/auth/register", json={"email": "a@b.c", "password": "short"}).status_code == 400
    assert client.post("/auth/register", json={"email": "not-an-email", "password": PASSWORD}).status_code == 400


def test_highest_role_wins(app, login):
    user = make_user("both@example.com", UserRole.SERVICE_PROVIDER)
    assert login(user).get("/auth/me").get_json()["data"]["role"] == "service_provider"

    user.roles.append(Role.query.filter_by(name="admin").one())
    db.session.commit()
    me = login(user).get("/auth/me").get_json()["data"]
    assert me["role"] == "admin"
    assert sorted(me["roles"]) == ["admin", "service_provider"]


def test_provider_creates_and_deactivates_service(login, provider, customer):
    client = login(provider)
    resp = client.post("/services", json={"name": "Lawn mowing", "unit_price": "25.50", "category": "garden"})
    assert resp.status_code == 201
    service = resp.get_json()["data"]
    assert service["unit_price"] == 25.5
    assert service["currency"] == "USD"
    assert service["provider_id"] == provider.id

    assert login(customer).post("/services", json={"name": "x", "unit_price": 1}).status_code == 403

    listed = client.get("/services").get_json()
    assert [s["id"] for s in listed["data"]] == [service["id"]]

    assert client.post(f"/services/{service['id']}/deactivate").status_code == 200
    assert client.get("/services").get_json()["count"] == 0


def test_service_validation(login, provider):
    client = login(provider)
    assert client.post("/services", json={"name": "", "unit_price": 1}).status_code == 400
    assert client.post("/services", json={"name": "x", "unit_price": "-1"}).status_code == 400
    assert client.post("/services", json={"name": "x", "unit_price": "abc"}).status_code == 400
    assert client.post("/services", json={"name": "x", "unit_price": 1, "price_type": "yearly"}).status_code == 400


def test_other_provider_cannot_deactivate(login, service):
    rival = make_user("rival@example.com", UserRole.SERVICE_PROVIDER)
    resp = login(rival).post(f"/services/{service.id}/deactivate")
    assert resp.status_code == 403
    assert resp.get_json()["error"]["kind"] == "NotProvider"


def test_security_headers(app):
    resp = app.test_client().get("/health")
    assert resp.headers["X-Frame-Options"] == "DENY"
    assert resp.headers["X-Content-Type-Options"] == "nosniff"
