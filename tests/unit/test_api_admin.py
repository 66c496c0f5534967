import pytest
from fastapi.testclient import TestClient

from cms.api.main import create_app
from cms.db import models
from cms.db.readiness import ReadinessInitializer
from cms.db.schema import ApplyMigrations
from cms.services.auth_service import AuthService
from cms.utils.token_crypto import hash_password


def test_users_listing_is_admin_only(client, login_as):
    assert client.get("/users", headers=login_as("EDITOR")).status_code == 403

    response = client.get("/users", headers=login_as("ADMIN", email="root@example.com"))

    assert response.status_code == 200
    users = response.json()
    assert {u["email"] for u in users} == {"editor1@example.com", "root@example.com"}
    assert all("password_hash" not in u for u in users)


def test_registration_refreshes_cached_user_listing(client, login_as, fake_redis):
    admin = login_as("ADMIN", email="root@example.com")
    assert [u["email"] for u in client.get("/users", headers=admin).json()] == ["root@example.com"]
    assert "users:list" in fake_redis.data

    response = client.post(
        "/auth/register", json={"email": "newbie@example.com", "password": "secret123", "name": "Newbie"}
    )
    assert response.status_code == 201
    assert "users:list" not in fake_redis.data

    emails = {u["email"] for u in client.get("/users", headers=admin).json()}
    assert emails == {"root@example.com", "newbie@example.com"}


def test_dashboard_stats(client, login_as, fake_redis):
    assert client.get("/admin/stats", headers=login_as("VIEWER")).status_code == 403

    editor = login_as("EDITOR")
    for slug, status in (("a", "PUBLISHED"), ("b", "DRAFT"), ("c", "DRAFT")):
        client.post("/posts", json={"title": slug, "slug": slug, "content": "x", "status": status}, headers=editor)
    client.post("/categories", json={"name": "Tech", "slug": "tech"}, headers=editor)

    stats = client.get("/admin/stats", headers=editor).json()

    assert stats == {
        "total_posts": 3,
        "published_posts": 1,
        "draft_posts": 2,
        "archived_posts": 0,
        "categories": 1,
        "tags": 0,
        "users": 2,
    }
    assert fake_redis.ttl_of("admin:stats") == pytest.approx(300)

    client.post("/posts", json={"title": "d", "slug": "d", "content": "x"}, headers=editor)
    assert client.get("/admin/stats", headers=editor).json()["total_posts"] == 4


def test_readiness_snapshot(client, login_as):
    assert client.get("/admin/readiness", headers=login_as("EDITOR")).status_code == 403

    body = client.get("/admin/readiness", headers=login_as("ADMIN")).json()

    assert body["readiness"]["state"] == "ready"
    assert body["readiness"]["repair_actions"] == ["synchronize_schema"]
    assert body["cache"] == {"enabled": True, "state": "ready", "reconnect_attempts": 0}


def test_on_demand_migration(store, cache, sleeps):
    ApplyMigrations().apply(store)
    with store.session() as db:
        db.add(models.User(email="admin@example.com", password_hash=hash_password("secret123"), role="ADMIN"))
        db.commit()
    gate = ReadinessInitializer(store, repair_actions=[ApplyMigrations()], settle_delay=0, sleep=sleeps)
    service = AuthService(store.session, cache, secret="test-secret", expires_in=3600, session_ttl=600)
    app = create_app(store=store, readiness=gate, cache=cache, auth_service=service, warm_up=False)

    with TestClient(app) as client:
        token = client.post("/auth/login", json={"email": "admin@example.com", "password": "secret123"}).json()["token"]
        client.cookies.clear()
        response = client.post("/admin/schema/migrate", headers={"Authorization": f"Bearer {token}"})

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["action"] == "apply_migrations"
    assert body["readiness"]["state"] == "ready"


def test_dashboard_stats_follow_taxonomy_and_user_writes(client, login_as, fake_redis):
    editor = login_as("EDITOR")
    before = client.get("/admin/stats", headers=editor).json()
    assert "admin:stats" in fake_redis.data

    category = client.post("/categories", json={"name": "Tech", "slug": "tech"}, headers=editor).json()
    assert "admin:stats" not in fake_redis.data
    assert client.get("/admin/stats", headers=editor).json()["categories"] == before["categories"] + 1

    client.post("/tags", json={"name": "Python", "slug": "python"}, headers=editor)
    assert client.get("/admin/stats", headers=editor).json()["tags"] == before["tags"] + 1

    client.delete(f"/categories/{category['id']}", headers=editor)
    assert client.get("/admin/stats", headers=editor).json()["categories"] == before["categories"]

    client.post("/auth/register", json={"email": "writer@example.com", "password": "secret123", "name": "Writer"})
    client.cookies.clear()
    assert client.get("/admin/stats", headers=editor).json()["users"] == before["users"] + 1
