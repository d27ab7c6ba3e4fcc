from conftest import PASSWORD, auth, signup


def test_admin_lists_users(client, admin, viewer):
    admin_token, _ = admin

    response = client.get("/users/", headers=auth(admin_token))

    assert response.status_code == 200
    assert {user["username"] for user in response.json()} == {"admin", "viewer"}


def test_non_admin_cannot_list_users(client, viewer):
    token, _ = viewer
    response = client.get("/users/", headers=auth(token))
    assert response.status_code == 403
    assert response.json()["detail"] == "Admin access required"


def test_top_up_adds_to_wallet(client, admin, viewer):
    admin_token, _ = admin
    viewer_token, viewer_user = viewer

    first = client.post(
        f"/users/{viewer_user['id']}/wallet/top-up",
        json={"amount": 250},
        headers=auth(admin_token),
    )
    second = client.post(
        f"/users/{viewer_user['id']}/wallet/top-up",
        json={"amount": 50},
        headers=auth(admin_token),
    )

    assert first.status_code == 200
    assert first.json()["wallet"] == 1250
    assert second.json()["wallet"] == 1300
    assert client.get("/users/me", headers=auth(viewer_token)).json()["wallet"] == 1300


def test_top_up_rejects_non_positive_amount(client, admin, viewer):
    admin_token, _ = admin
    _, viewer_user = viewer
    response = client.post(
        f"/users/{viewer_user['id']}/wallet/top-up",
        json={"amount": 0},
        headers=auth(admin_token),
    )
    assert response.status_code == 400


def test_top_up_unknown_user(client, admin):
    admin_token, _ = admin
    response = client.post(
        "/users/missing/wallet/top-up", json={"amount": 10}, headers=auth(admin_token)
    )
    assert response.status_code == 404


def test_top_up_requires_admin(client, viewer):
    token, user = viewer
    response = client.post(
        f"/users/{user['id']}/wallet/top-up", json={"amount": 10}, headers=auth(token)
    )
    assert response.status_code == 403


def test_update_profile_changes_username_and_login_email(client, viewer):
    token, _ = viewer

    response = client.patch(
        "/users/me",
        json={"username": "renamed", "email": "renamed@example.com"},
        headers=auth(token),
    )

    assert response.status_code == 200
    assert response.json()["username"] == "renamed"
    assert response.json()["email"] == "renamed@example.com"
    login = client.post("/auth/login", json={"email": "renamed@example.com", "password": PASSWORD})
    assert login.status_code == 200


def test_update_profile_keeps_own_username(client, viewer):
    token, _ = viewer
    response = client.patch(
        "/users/me",
        json={"username": "viewer", "email": "viewer@example.com"},
        headers=auth(token),
    )
    assert response.status_code == 200


def test_update_profile_rejects_taken_username(client, viewer):
    signup(client, "other@example.com", "other")
    token, _ = viewer
    response = client.patch(
        "/users/me",
        json={"username": "other", "email": "viewer@example.com"},
        headers=auth(token),
    )
    assert response.status_code == 409
