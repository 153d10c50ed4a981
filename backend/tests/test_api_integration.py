import asyncio

import pytest
from fastapi.testclient import TestClient

from marketplace.api.deps import get_store
from marketplace.core.security import create_access_token
from marketplace.main import app
from marketplace.store.memory import MemoryKeyedStore


def _auth_header(actor_id: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(actor_id)}"}


def _extract_error_payload(response):
    payload = response.json()
    assert payload["ok"] is False
    assert "error" in payload
    assert "request_id" in payload
    return payload


def _extract_success_data(response):
    payload = response.json()
    assert payload["ok"] is True
    assert "data" in payload
    assert "request_id" in payload
    return payload["data"]


def _seed_user(store: MemoryKeyedStore, actor_id: str, username: str, role: str = "user", **extra) -> None:
    asyncio.run(store.set(f"users/{actor_id}", {"username": username, "role": role, "banned": False, **extra}))


@pytest.fixture()
def api_store():
    store = MemoryKeyedStore()
    app.dependency_overrides[get_store] = lambda: store
    yield store
    app.dependency_overrides.clear()


@pytest.fixture()
def client(api_store):
    return TestClient(app)


def test_sign_up_sign_in_and_me(client):
    response = client.post("/auth/sign-up", json={"username": " Neo ", "password": "secret1"})
    assert response.status_code == 200
    data = _extract_success_data(response)
    assert data["token_type"] == "bearer"
    assert data["profile"]["username"] == "Neo"
    assert data["profile"]["role"] == "user"
    assert data["permissions"] == []

    signed_in = _extract_success_data(client.post("/auth/sign-in", json={"username": "neo", "password": "secret1"}))
    assert signed_in["user_id"] == data["user_id"]

    me = client.get("/auth/me", headers={"Authorization": f"Bearer {signed_in['access_token']}"})
    assert me.status_code == 200
    assert _extract_success_data(me)["profile"]["username"] == "Neo"


def test_auth_errors_use_error_envelope(client):
    client.post("/auth/sign-up", json={"username": "trinity", "password": "secret1"})

    taken = client.post("/auth/sign-up", json={"username": "Trinity", "password": "secret2"})
    assert taken.status_code == 409
    assert _extract_error_payload(taken)["error"]["message"] == "Username taken."

    short = client.post("/auth/sign-up", json={"username": "ab", "password": "secret1"})
    assert short.status_code == 422
    assert _extract_error_payload(short)["error"]["message"] == "Username too short."

    wrong = client.post("/auth/sign-in", json={"username": "trinity", "password": "nope-nope"})
    assert wrong.status_code == 401
    assert wrong.headers["WWW-Authenticate"] == "Bearer"
    assert _extract_error_payload(wrong)["error"]["code"] == "auth_failed"

    bad_token = client.get("/auth/me", headers={"Authorization": "Bearer not-a-token"})
    assert bad_token.status_code == 401

    anonymous = client.get("/auth/me")
    assert anonymous.status_code == 401


def test_request_id_is_echoed(client):
    response = client.get("/health", headers={"X-Request-ID": "req-42"})
    assert response.status_code == 200
    assert response.headers["X-Request-ID"] == "req-42"
    assert response.json()["request_id"] == "req-42"


def test_items_pagination_meta(client, api_store):
    for i in range(15):
        asyncio.run(
            api_store.set(
                f"items/item-{i:03d}",
                {
                    "title": f"Item {i}",
                    "cat": "Maps",
                    "changelog": [{"version": "v1.0", "text": "Initial Release", "timestamp": 1000 + i}],
                    "ratings": {"u1": {"rating": 4}, "u2": {"rating": 5}} if i == 14 else {},
                },
            )
        )

    first = client.get("/items", params={"page_size": 10})
    assert first.status_code == 200
    payload = first.json()
    ids = [item["id"] for item in payload["data"]["items"]]
    assert ids == [f"item-{i:03d}" for i in range(14, 4, -1)]
    assert payload["data"]["items"][0]["average_rating"] == 4.5
    assert payload["meta"] == {"next_cursor": "item-005", "has_more": True, "page_size": 10}

    second = client.get("/items", params={"page_size": 10, "cursor": "item-005"})
    payload = second.json()
    assert [item["id"] for item in payload["data"]["items"]] == [f"item-{i:03d}" for i in range(4, -1, -1)]
    assert payload["meta"]["has_more"] is False

    bad_sort = client.get("/items", params={"sort_by": "random"})
    assert bad_sort.status_code == 422
    assert _extract_error_payload(bad_sort)["error"]["code"] == "validation_error"


def test_item_lifecycle(client, api_store):
    _seed_user(api_store, "u-author", "alice")
    _seed_user(api_store, "u-other", "bob")
    _seed_user(api_store, "u-admin", "adm", role="admin")

    anonymous = client.post("/items", json={"title": "Castle"})
    assert anonymous.status_code == 403
    assert _extract_error_payload(anonymous)["error"]["message"] == "Sign in required."

    created = client.post("/items", json={"title": "Castle", "cat": "Maps"}, headers=_auth_header("u-author"))
    assert created.status_code == 200
    item = _extract_success_data(created)
    assert item["author"] == "alice"
    assert item["changelog"][0]["version"] == "v1.0"

    hijack = client.put(f"/items/{item['id']}", json={"title": "Mine"}, headers=_auth_header("u-other"))
    assert hijack.status_code == 403
    assert _extract_error_payload(hijack)["error"]["code"] == "permission_denied"

    edited = client.put(f"/items/{item['id']}", json={"title": "Castle v2"}, headers=_auth_header("u-author"))
    assert [entry["version"] for entry in _extract_success_data(edited)["changelog"]] == ["v1.0", "Update"]

    rated = client.post(f"/items/{item['id']}/ratings", json={"rating": 5}, headers=_auth_header("u-other"))
    assert rated.status_code == 200
    out_of_range = client.post(f"/items/{item['id']}/ratings", json={"rating": 9}, headers=_auth_header("u-other"))
    assert out_of_range.status_code == 422

    assert client.post(f"/items/{item['id']}/feature", headers=_auth_header("u-author")).status_code == 403
    featured = client.post(f"/items/{item['id']}/feature", headers=_auth_header("u-admin"))
    assert _extract_success_data(featured)["featured"] is True
    featured_list = _extract_success_data(client.get("/items/featured"))["items"]
    assert [i["id"] for i in featured_list] == [item["id"]]
    assert featured_list[0]["average_rating"] == 5

    fetched = _extract_success_data(client.get(f"/items/{item['id']}"))
    assert fetched["title"] == "Castle v2"

    assert client.delete(f"/items/{item['id']}", headers=_auth_header("u-author")).status_code == 200
    missing = client.get(f"/items/{item['id']}")
    assert missing.status_code == 404
    assert _extract_error_payload(missing)["error"]["code"] == "not_found"


def test_admin_endpoints_and_ban(client, api_store):
    _seed_user(api_store, "u-owner", "boss", role="owner")
    _seed_user(api_store, "u-admin", "adm", role="admin")
    _seed_user(api_store, "u-staff", "mod", role="staff")
    _seed_user(api_store, "u-user", "alice")

    forbidden = client.get("/admin/users", headers=_auth_header("u-user"))
    assert forbidden.status_code == 403
    assert _extract_error_payload(forbidden)["error"]["code"] == "permission_denied"

    listing = client.get("/admin/users", params={"q": "A"}, headers=_auth_header("u-staff"))
    assert listing.status_code == 200
    payload = listing.json()
    assert [row["username"] for row in payload["data"]["users"]] == ["adm", "alice"]
    assert payload["meta"]["total"] == 2

    staff_patch = client.patch("/admin/users/u-user", json={"muted": True}, headers=_auth_header("u-staff"))
    assert staff_patch.status_code == 403

    owner_patch = client.patch("/admin/users/u-owner", json={"banned": True}, headers=_auth_header("u-admin"))
    assert owner_patch.status_code == 403

    unknown_field = client.patch("/admin/users/u-user", json={"karma": 5}, headers=_auth_header("u-admin"))
    assert unknown_field.status_code == 422

    banned = client.patch("/admin/users/u-user", json={"banned": True}, headers=_auth_header("u-admin"))
    assert _extract_success_data(banned)["banned"] is True

    locked_out = client.get("/auth/me", headers=_auth_header("u-user"))
    assert locked_out.status_code == 403
    assert _extract_error_payload(locked_out)["error"]["code"] == "account_banned"

    matrix = _extract_success_data(client.get("/admin/permissions", headers=_auth_header("u-admin")))
    assert [row["role"] for row in matrix["roles"]] == ["owner", "admin", "staff", "user"]

    assert client.delete("/admin/users/u-admin", headers=_auth_header("u-admin")).status_code == 403
    assert client.delete("/admin/users/u-user", headers=_auth_header("u-admin")).status_code == 200
    assert asyncio.run(api_store.get("users/u-user")) is None


def test_banned_account_cannot_sign_in(client, api_store):
    signed_up = _extract_success_data(client.post("/auth/sign-up", json={"username": "cypher", "password": "secret1"}))
    asyncio.run(api_store.update(f"users/{signed_up['user_id']}", {"banned": True}))

    response = client.post("/auth/sign-in", json={"username": "cypher", "password": "secret1"})
    assert response.status_code == 403
    assert _extract_error_payload(response)["error"]["message"] == "Account banned."


def test_categories_and_profiles(client, api_store):
    _seed_user(api_store, "u-admin", "adm", role="admin")
    _seed_user(api_store, "u-user", "alice", bio="old")

    added = client.post("/categories", json={"name": " Maps "}, headers=_auth_header("u-admin"))
    assert _extract_success_data(added) == {"name": "Maps", "added": True}
    again = client.post("/categories", json={"name": "Maps"}, headers=_auth_header("u-admin"))
    assert _extract_success_data(again)["added"] is False
    assert client.post("/categories", json={"name": "Skins"}, headers=_auth_header("u-user")).status_code == 403
    assert _extract_success_data(client.get("/categories"))["categories"] == ["Maps"]
    removed = client.delete("/categories/Maps", headers=_auth_header("u-admin"))
    assert _extract_success_data(removed) == {"name": "Maps", "removed": True}

    patched = client.patch("/profile", json={"bio": "new"}, headers=_auth_header("u-user"))
    assert _extract_success_data(patched)["bio"] == "new"
    assert client.patch("/profile", json={"role": "owner"}, headers=_auth_header("u-user")).status_code == 422

    public = _extract_success_data(client.get("/profile/u-user"))
    assert public["bio"] == "new"
    assert "banned" not in public
    assert client.get("/profile/ghost").status_code == 404


def test_metrics_requires_dashboard_permission(client, api_store):
    _seed_user(api_store, "u-admin", "adm", role="admin")
    _seed_user(api_store, "u-user", "alice")
    client.get("/health")

    assert client.get("/metrics", headers=_auth_header("u-user")).status_code == 403
    response = client.get("/metrics", headers=_auth_header("u-admin"))
    counters = _extract_success_data(response)["counters"]
    assert "http_requests_total" in counters


def test_prometheus_exposition(client):
    client.get("/health")
    response = client.get("/metrics/prometheus")
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/plain")
    assert "# TYPE marketplace_http_requests_total counter" in response.text
    assert 'marketplace_http_requests_total{method="GET",status="200"} 1' in response.text


def test_malformed_ids_are_rejected_as_validation_errors(client, api_store):
    _seed_user(api_store, "u-admin", "adm", role="admin")

    item = client.get("/items/bad.id")
    assert item.status_code == 422
    payload = _extract_error_payload(item)
    assert payload["error"]["code"] == "validation_error"
    assert payload["error"]["message"] == "Invalid store key: 'bad.id'"

    profile = client.get("/profile/a$b")
    assert profile.status_code == 422

    patched = client.patch("/admin/users/x[1]", json={"muted": True}, headers=_auth_header("u-admin"))
    assert patched.status_code == 422
    assert _extract_error_payload(patched)["error"]["code"] == "validation_error"
