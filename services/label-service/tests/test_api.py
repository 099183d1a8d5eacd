from __future__ import annotations

from decimal import Decimal

import pytest

from label_service.config import get_settings
from label_service.domain.account import Role
from label_service.domain.ledger import TransactionKind

from conftest import PASSWORD, auth_headers, sample_address, sample_parcel


@pytest.fixture
def accounts(store):
    admin = store.add_account(role=Role.SUPER_ADMIN, balance="10000", name="admin")
    reseller = store.add_account(role=Role.RESELLER, creator=admin, name="reseller")
    user = store.add_account(role=Role.USER, creator=reseller, name="user")
    stranger = store.add_account(role=Role.USER, creator=admin, name="stranger")
    return admin, reseller, user, stranger


def test_login_sets_session_cookie(api_client, accounts):
    admin, *_ = accounts

    response = api_client.post("/v1/auth/login", json={"email": admin.email, "password": PASSWORD})

    assert response.status_code == 200
    assert response.json()["user"]["id"] == admin.account_id
    assert response.json()["user"]["role"] == "SUPER_ADMIN"
    cookie_name = get_settings().session_cookie_name
    assert "httponly" in response.headers["set-cookie"].lower()
    assert api_client.cookies.get(cookie_name)

    session = api_client.get("/v1/auth/session")
    assert session.status_code == 200
    assert session.json()["user"]["email"] == admin.email

    api_client.post("/v1/auth/logout")
    assert api_client.get("/v1/auth/session").status_code == 401


def test_login_rejects_bad_password_and_throttles(api_client, accounts):
    admin, *_ = accounts
    for _ in range(3):
        response = api_client.post("/v1/auth/login", json={"email": admin.email, "password": "wrong-password"})
        assert response.status_code == 401
        assert response.json()["code"] == "AUTH_ERROR"

    blocked = api_client.post("/v1/auth/login", json={"email": admin.email, "password": PASSWORD})
    assert blocked.status_code == 429
    assert blocked.json()["code"] == "RATE_LIMITED"


def test_requests_without_session_are_unauthorised(api_client, accounts):
    _, _, user, _ = accounts
    response = api_client.post("/v1/credits/assign", json={"userId": user.account_id, "amount": 10})
    assert response.status_code == 401
    assert response.json() == {"error": "Authentication required", "code": "AUTH_ERROR"}

    garbage = api_client.get("/v1/auth/session", headers={"Authorization": "Bearer not-a-token"})
    assert garbage.status_code == 401


def test_session_is_rejected_once_account_is_deactivated(api_client, store, accounts):
    _, _, user, _ = accounts
    headers = auth_headers(user)
    assert api_client.get("/v1/auth/session", headers=headers).status_code == 200

    store.accounts[user.account_id].is_active = False

    assert api_client.get("/v1/auth/session", headers=headers).status_code == 401


def test_assign_and_revoke_endpoints(api_client, store, accounts):
    admin, reseller, user, _ = accounts

    funded = api_client.post(
        "/v1/credits/assign",
        json={"userId": reseller.account_id, "amount": 500, "description": "Opening float"},
        headers=auth_headers(admin),
    )
    assert funded.status_code == 200
    body = funded.json()
    assert body["success"] is True
    assert body["creditBalance"] == 500.0
    assert body["transaction"]["type"] == "CREDIT_ASSIGN"
    assert body["transaction"]["createdById"] == admin.account_id

    assigned = api_client.post(
        "/v1/credits/assign",
        json={"userId": user.account_id, "amount": "100"},
        headers=auth_headers(reseller),
    )
    assert assigned.status_code == 200
    assert assigned.json()["creditBalance"] == 100.0

    revoked = api_client.post(
        "/v1/credits/revoke",
        json={"userId": user.account_id, "amount": 50},
        headers=auth_headers(reseller),
    )
    assert revoked.status_code == 200
    assert revoked.json()["creditBalance"] == 50.0
    assert store.balance(reseller) == Decimal("450")


def test_credit_endpoint_errors(api_client, store, accounts):
    admin, reseller, user, stranger = accounts

    invalid = api_client.post(
        "/v1/credits/assign", json={"userId": user.account_id, "amount": -5}, headers=auth_headers(admin)
    )
    assert invalid.status_code == 400
    assert invalid.json()["code"] == "INVALID_AMOUNT"

    missing = api_client.post("/v1/credits/assign", json={"userId": "nobody", "amount": 5}, headers=auth_headers(admin))
    assert missing.status_code == 404
    assert missing.json()["code"] == "TARGET_NOT_FOUND"

    not_owner = api_client.post(
        "/v1/credits/assign", json={"userId": stranger.account_id, "amount": -5}, headers=auth_headers(reseller)
    )
    assert not_owner.status_code == 403
    assert not_owner.json() == {
        "error": "you can only act on your own accounts or accounts you created",
        "code": "PERMISSION_ERROR",
        "reason": "FORBIDDEN_NOT_OWNER",
    }

    by_user = api_client.post(
        "/v1/credits/revoke", json={"userId": stranger.account_id, "amount": 5}, headers=auth_headers(user)
    )
    assert by_user.status_code == 403
    assert by_user.json()["reason"] == "FORBIDDEN_ROLE"

    broke = api_client.post(
        "/v1/credits/assign", json={"userId": user.account_id, "amount": 5}, headers=auth_headers(reseller)
    )
    assert broke.status_code == 400
    assert broke.json()["code"] == "INSUFFICIENT_BALANCE"

    malformed = api_client.post("/v1/credits/assign", json={"amount": 5}, headers=auth_headers(admin))
    assert malformed.status_code == 400
    assert malformed.json()["code"] == "VALIDATION_ERROR"

    assert store.transactions == []


@pytest.mark.parametrize("amount", [1e30, "1e30"])
def test_huge_amounts_are_invalid_not_server_errors(api_client, store, accounts, amount):
    admin, reseller, _, _ = accounts

    for path in ("/v1/credits/assign", "/v1/credits/revoke"):
        response = api_client.post(
            path, json={"userId": reseller.account_id, "amount": amount}, headers=auth_headers(admin)
        )
        assert response.status_code == 400
        assert response.json()["code"] == "INVALID_AMOUNT"

    created = api_client.post(
        "/v1/users",
        json={"name": "Big", "email": "big@example.com", "password": "long-enough", "initialCredit": amount},
        headers=auth_headers(admin),
    )
    assert created.status_code == 400
    assert created.json()["code"] == "INVALID_AMOUNT"
    assert store.transactions == []


def test_bearer_header_wins_over_session_cookie(api_client, accounts):
    admin, _, user, _ = accounts
    login = api_client.post("/v1/auth/login", json={"email": user.email, "password": PASSWORD})
    assert login.status_code == 200

    as_cookie = api_client.get("/v1/auth/session")
    assert as_cookie.json()["user"]["id"] == user.account_id

    as_header = api_client.get("/v1/auth/session", headers=auth_headers(admin))
    assert as_header.json()["user"]["id"] == admin.account_id


def test_balance_endpoint_respects_view_rule(api_client, accounts):
    admin, reseller, user, stranger = accounts
    own = api_client.get(f"/v1/credits/balance/{user.account_id}", headers=auth_headers(user))
    assert own.status_code == 200
    assert own.json() == {"userId": user.account_id, "creditBalance": 0.0}

    assert api_client.get(f"/v1/credits/balance/{user.account_id}", headers=auth_headers(reseller)).status_code == 200
    assert api_client.get(f"/v1/credits/balance/{stranger.account_id}", headers=auth_headers(reseller)).status_code == 403


def test_transactions_are_scoped_and_paginated(api_client, services, accounts):
    admin, reseller, user, stranger = accounts
    services.engine.assign(admin, reseller.account_id, 100)
    for _ in range(3):
        services.engine.assign(reseller, user.account_id, 10)
    services.engine.assign(admin, stranger.account_id, 20)

    own = api_client.get("/v1/transactions", headers=auth_headers(user))
    assert own.status_code == 200
    assert own.json()["pagination"]["total"] == 3
    assert {row["userId"] for row in own.json()["transactions"]} == {user.account_id}

    first_page = api_client.get("/v1/transactions", params={"limit": 2}, headers=auth_headers(reseller))
    body = first_page.json()
    # Reseller sees its own pool rows plus its user's rows, never the stranger's.
    assert body["pagination"] == {"page": 1, "limit": 2, "total": 7, "totalPages": 4}
    assert len(body["transactions"]) == 2

    filtered = api_client.get(
        "/v1/transactions",
        params={"type": TransactionKind.CREDIT_REVOKE.value, "userId": reseller.account_id},
        headers=auth_headers(reseller),
    )
    assert filtered.json()["pagination"]["total"] == 3

    forbidden = api_client.get(
        "/v1/transactions", params={"userId": stranger.account_id}, headers=auth_headers(reseller)
    )
    assert forbidden.status_code == 403

    everything = api_client.get("/v1/transactions", params={"limit": 100}, headers=auth_headers(admin))
    assert everything.json()["pagination"]["total"] == 8


def test_create_user_with_initial_credit(api_client, store, accounts):
    admin, reseller, _, _ = accounts
    api_client.post(
        "/v1/credits/assign", json={"userId": reseller.account_id, "amount": 100}, headers=auth_headers(admin)
    )

    created = api_client.post(
        "/v1/users",
        json={"name": "New User", "email": "New.User@example.com", "password": "long-enough", "initialCredit": 40},
        headers=auth_headers(reseller),
    )

    assert created.status_code == 201
    body = created.json()
    assert body["role"] == "USER"
    assert body["creatorId"] == reseller.account_id
    assert body["creditBalance"] == 40.0
    assert body["email"] == "new.user@example.com"
    assert store.balance(reseller) == Decimal("60")

    duplicate = api_client.post(
        "/v1/users",
        json={"name": "Again", "email": "new.user@example.com", "password": "long-enough"},
        headers=auth_headers(reseller),
    )
    assert duplicate.status_code == 409


def test_create_user_rules(api_client, store, accounts):
    _, reseller, user, _ = accounts

    reseller_by_reseller = api_client.post(
        "/v1/users",
        json={"name": "Sub", "email": "sub@example.com", "password": "long-enough", "role": "RESELLER"},
        headers=auth_headers(reseller),
    )
    assert reseller_by_reseller.status_code == 403

    by_user = api_client.post(
        "/v1/users",
        json={"name": "Sub", "email": "sub@example.com", "password": "long-enough"},
        headers=auth_headers(user),
    )
    assert by_user.status_code == 403

    short_password = api_client.post(
        "/v1/users",
        json={"name": "Sub", "email": "sub@example.com", "password": "short"},
        headers=auth_headers(reseller),
    )
    assert short_password.status_code == 400

    unfunded = api_client.post(
        "/v1/users",
        json={"name": "Sub", "email": "sub@example.com", "password": "long-enough", "initialCredit": 5},
        headers=auth_headers(reseller),
    )
    assert unfunded.status_code == 400
    assert unfunded.json()["code"] == "INSUFFICIENT_BALANCE"
    assert not any(account.email == "sub@example.com" for account in store.accounts.values())


def test_list_users_by_scope(api_client, accounts):
    admin, reseller, user, _ = accounts

    listed = api_client.get("/v1/users", headers=auth_headers(reseller))
    assert listed.status_code == 200
    assert {row["id"] for row in listed.json()["users"]} == {reseller.account_id, user.account_id}

    searched = api_client.get("/v1/users", params={"search": "strang"}, headers=auth_headers(admin))
    assert [row["name"] for row in searched.json()["users"]] == ["stranger"]


def test_password_change_and_reset(api_client, accounts):
    _, reseller, user, stranger = accounts

    wrong_current = api_client.post(
        f"/v1/users/{user.account_id}/password",
        json={"currentPassword": "nope-nope", "newPassword": "brand-new-pass"},
        headers=auth_headers(user),
    )
    assert wrong_current.status_code == 400

    changed = api_client.post(
        f"/v1/users/{user.account_id}/password",
        json={"currentPassword": PASSWORD, "newPassword": "brand-new-pass"},
        headers=auth_headers(user),
    )
    assert changed.status_code == 200
    login = api_client.post("/v1/auth/login", json={"email": user.email, "password": "brand-new-pass"})
    assert login.status_code == 200

    someone_else = api_client.post(
        f"/v1/users/{stranger.account_id}/password",
        json={"currentPassword": PASSWORD, "newPassword": "brand-new-pass"},
        headers=auth_headers(user),
    )
    assert someone_else.status_code == 403

    reset = api_client.put(
        f"/v1/users/{user.account_id}/password", json={"newPassword": "reset-by-reseller"}, headers=auth_headers(reseller)
    )
    assert reset.status_code == 200
    assert (
        api_client.put(
            f"/v1/users/{stranger.account_id}/password", json={"newPassword": "reset-by-reseller"}, headers=auth_headers(reseller)
        ).status_code
        == 403
    )


def test_update_preferences(api_client, accounts):
    _, _, user, _ = accounts
    response = api_client.patch(
        f"/v1/users/{user.account_id}/preferences",
        json={"marketingEmails": True},
        headers=auth_headers(user),
    )
    assert response.status_code == 200
    assert response.json()["marketingEmails"] is True
    assert response.json()["emailNotifications"] is True


def test_update_own_profile(api_client, store, accounts):
    _, _, user, _ = accounts

    response = api_client.patch(
        f"/v1/users/{user.account_id}",
        json={"name": "Renamed User", "email": "Renamed@Example.com"},
        headers=auth_headers(user),
    )

    assert response.status_code == 200
    assert response.json()["name"] == "Renamed User"
    assert response.json()["email"] == "renamed@example.com"
    assert store.accounts[user.account_id].email == "renamed@example.com"
    login = api_client.post("/v1/auth/login", json={"email": "renamed@example.com", "password": PASSWORD})
    assert login.status_code == 200


def test_profile_update_rules(api_client, store, accounts):
    admin, reseller, user, stranger = accounts

    by_reseller = api_client.patch(
        f"/v1/users/{user.account_id}",
        json={"name": "Nope", "email": "nope@example.com"},
        headers=auth_headers(reseller),
    )
    assert by_reseller.status_code == 403
    by_other_user = api_client.patch(
        f"/v1/users/{user.account_id}",
        json={"name": "Nope", "email": "nope@example.com"},
        headers=auth_headers(stranger),
    )
    assert by_other_user.status_code == 403
    assert store.accounts[user.account_id].email == user.email

    by_admin = api_client.patch(
        f"/v1/users/{user.account_id}",
        json={"name": "Fixed By Admin", "email": user.email},
        headers=auth_headers(admin),
    )
    assert by_admin.status_code == 200
    assert by_admin.json()["name"] == "Fixed By Admin"

    duplicate = api_client.patch(
        f"/v1/users/{user.account_id}",
        json={"name": "Taken", "email": stranger.email.upper()},
        headers=auth_headers(user),
    )
    assert duplicate.status_code == 409
    assert duplicate.json()["code"] == "CONFLICT"

    missing_name = api_client.patch(
        f"/v1/users/{user.account_id}",
        json={"name": "", "email": "fine@example.com"},
        headers=auth_headers(user),
    )
    assert missing_name.status_code == 400


def test_label_purchase_and_refund_over_http(api_client, services, accounts):
    admin, _, user, _ = accounts
    services.engine.assign(admin, user.account_id, 50)
    headers = auth_headers(user)

    rates = api_client.post(
        "/v1/labels/rates",
        json={
            "fromAddress": sample_address().model_dump(),
            "toAddress": sample_address(city="Oakland").model_dump(),
            "parcel": sample_parcel().model_dump(),
        },
        headers=headers,
    )
    assert rates.status_code == 200
    cheapest = rates.json()["rates"][0]
    assert cheapest["amount"] == 12.34

    purchased = api_client.post("/v1/labels/purchase", json={"rateId": cheapest["rateId"]}, headers=headers)
    assert purchased.status_code == 200
    body = purchased.json()
    assert body["creditBalance"] == 37.66
    assert body["shipment"]["status"] == "PURCHASED"
    assert body["transaction"]["type"] == "LABEL_PURCHASE"

    listed = api_client.get("/v1/labels", headers=headers)
    assert listed.json()["pagination"]["total"] == 1
    shipment_id = listed.json()["shipments"][0]["id"]
    assert api_client.get(f"/v1/labels/{shipment_id}", headers=headers).status_code == 200

    transaction_id = body["shipment"]["transactionId"]
    refunded = api_client.post("/v1/labels/refund", json={"transactionId": transaction_id}, headers=headers)
    assert refunded.status_code == 200
    assert refunded.json()["creditBalance"] == 50.0

    again = api_client.post("/v1/labels/refund", json={"transactionId": transaction_id}, headers=headers)
    assert again.status_code == 409
    assert again.json()["code"] == "CONFLICT"


def test_label_purchase_with_insufficient_credit(api_client, accounts):
    _, _, user, _ = accounts
    response = api_client.post("/v1/labels/purchase", json={"rateId": "rate_usps_priority"}, headers=auth_headers(user))
    assert response.status_code == 400
    assert response.json()["code"] == "INSUFFICIENT_BALANCE"


def test_validate_address_rejects_malformed_body(api_client, accounts):
    _, _, user, _ = accounts
    response = api_client.post("/v1/labels/validate-address", json={"name": "x"}, headers=auth_headers(user))
    assert response.status_code == 400
    assert response.json()["code"] == "VALIDATION_ERROR"

    ok = api_client.post("/v1/labels/validate-address", json=sample_address().model_dump(), headers=auth_headers(user))
    assert ok.status_code == 200
    assert ok.json()["is_valid"] is True


def test_batch_endpoints(api_client, services, accounts):
    admin, _, user, _ = accounts
    services.engine.assign(admin, user.account_id, 100)
    headers = auth_headers(user)
    row = {
        "fromAddress": sample_address().model_dump(),
        "toAddress": sample_address(city="Oakland").model_dump(),
        "parcel": sample_parcel().model_dump(),
    }

    submitted = api_client.post("/v1/labels/batch", json={"filename": "labels.csv", "rows": [row, row]}, headers=headers)
    assert submitted.status_code == 202
    batch_id = submitted.json()["id"]

    fetched = api_client.get(f"/v1/labels/batch/{batch_id}", headers=headers)
    assert fetched.status_code == 200
    assert fetched.json()["status"] == "COMPLETED"
    assert fetched.json()["successfulRows"] == 2

    listed = api_client.get("/v1/labels/batch", headers=headers)
    assert [b["id"] for b in listed.json()["batches"]] == [batch_id]

    in_batch = api_client.get("/v1/labels", params={"batchId": batch_id}, headers=headers)
    assert in_batch.json()["pagination"]["total"] == 2

    cancel = api_client.post(f"/v1/labels/batch/{batch_id}/cancel", headers=headers)
    assert cancel.status_code == 409


def test_lifespan_releases_provider_and_pool(monkeypatch):
    from fastapi.testclient import TestClient

    from label_service import main

    events: list[str] = []

    class RecordingPool:
        def __init__(self, conninfo, **kwargs):
            events.append("pool.init")

        def open(self):
            events.append("pool.open")

        def close(self, timeout: float = 5.0):
            events.append("pool.close")

    class RecordingProvider:
        def __init__(self, config):
            pass

        def close(self):
            events.append("provider.close")

    monkeypatch.setattr(main, "ConnectionPool", RecordingPool)
    monkeypatch.setattr(main, "ShippoClient", RecordingProvider)

    with TestClient(main.app) as client:
        assert client.get("/healthz").json() == {"status": "ok"}
        assert events == ["pool.init", "pool.open"]

    assert events == ["pool.init", "pool.open", "provider.close", "pool.close"]
