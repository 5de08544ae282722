from decimal import Decimal

from eth_account import Account

from conftest import build_sign_in_message, log_in, sign_in, sign_text, use_session


def assert_error(response, status_code, code):
    assert response.status_code == status_code, response.text
    body = response.json()
    assert body["success"] is False
    assert body["error"]["code"] == code
    assert isinstance(body["error"]["message"], str)
    assert "timestamp" in body["error"]


def test_nonce_starts_session(client):
    response = client.get("/api/auth/nonce")

    assert response.status_code == 200
    nonce = response.json()["nonce"]
    assert len(nonce) == 32 and nonce.isalnum()
    cookie = response.headers["set-cookie"]
    assert cookie.startswith("sid=")
    assert "HttpOnly" in cookie
    assert "Path=/" in cookie
    assert "samesite=lax" in cookie.lower()


def test_nonce_reuses_session_cookie(client):
    first = client.get("/api/auth/nonce")
    second = client.get("/api/auth/nonce")

    assert first.cookies["sid"] == second.cookies["sid"]
    assert first.json()["nonce"] != second.json()["nonce"]


def test_sign_in_creates_user(client, test_wallet, settlement):
    response = sign_in(client, test_wallet)

    assert response.status_code == 200, response.text
    user = response.json()["user"]
    assert user["walletAddress"] == test_wallet.address.lower()
    assert Decimal(user["energyBalance"]) == Decimal("1000")
    assert Decimal(user["ethBalance"]) == Decimal("0")
    assert user["isNewUser"] is True
    assert settlement.calls_for("mint_initial_tokens")


def test_sign_in_rotates_session_id(client, test_wallet):
    pre_login_sid = client.get("/api/auth/nonce").cookies["sid"]

    response = sign_in(client, test_wallet)

    post_login_sid = response.cookies["sid"]
    assert post_login_sid != pre_login_sid
    use_session(client, pre_login_sid)
    assert_error(client.get("/api/auth/me"), 401, "AUTHENTICATION_REQUIRED")
    use_session(client, post_login_sid)
    assert client.get("/api/auth/me").json()["user"]["walletAddress"] == test_wallet.address.lower()


def test_second_sign_in_returns_same_user(client, test_wallet):
    first = sign_in(client, test_wallet).json()["user"]
    client.cookies.clear()
    second = sign_in(client, test_wallet).json()["user"]

    assert first["id"] == second["id"]


def test_checksum_and_lowercase_addresses_are_one_user(client, test_wallet):
    first = sign_in(client, test_wallet).json()["user"]
    client.cookies.clear()

    nonce = client.get("/api/auth/nonce").json()["nonce"]
    raw = build_sign_in_message(test_wallet.address.lower(), nonce)
    second = client.post("/api/auth/verify", json={"message": raw, "signature": sign_text(test_wallet, raw)})

    assert second.status_code == 200
    assert second.json()["user"]["id"] == first["id"]


def test_verify_without_nonce(client, test_wallet):
    raw = build_sign_in_message(test_wallet.address, "0" * 32)

    response = client.post("/api/auth/verify", json={"message": raw, "signature": sign_text(test_wallet, raw)})

    assert_error(response, 401, "NONCE_NOT_ISSUED")


def test_verify_missing_fields(client):
    client.get("/api/auth/nonce")

    assert_error(client.post("/api/auth/verify", json={}), 400, "MISSING_FIELD")


def test_verify_malformed_message(client):
    client.get("/api/auth/nonce")

    response = client.post("/api/auth/verify", json={"message": "hello", "signature": "0x00"})

    assert_error(response, 400, "MALFORMED_MESSAGE")


def test_domain_mismatch_burns_nonce(client, test_wallet):
    nonce = client.get("/api/auth/nonce").json()["nonce"]
    phishing = build_sign_in_message(test_wallet.address, nonce, domain="evil.example")

    response = client.post("/api/auth/verify", json={"message": phishing, "signature": sign_text(test_wallet, phishing)})
    assert_error(response, 401, "DOMAIN_MISMATCH")

    genuine = build_sign_in_message(test_wallet.address, nonce)
    response = client.post("/api/auth/verify", json={"message": genuine, "signature": sign_text(test_wallet, genuine)})
    assert_error(response, 401, "NONCE_NOT_ISSUED")


def test_uri_must_match_origin(client, test_wallet):
    assert_error(sign_in(client, test_wallet, uri="http://testserver:8080"), 401, "URI_MISMATCH")


def test_chain_must_match(client, test_wallet):
    assert_error(sign_in(client, test_wallet, chain_id=1), 401, "CHAIN_MISMATCH")


def test_forwarded_proto_sets_expected_scheme(client, test_wallet):
    nonce = client.get("/api/auth/nonce").json()["nonce"]
    raw = build_sign_in_message(test_wallet.address, nonce, uri="https://testserver")

    response = client.post(
        "/api/auth/verify",
        json={"message": raw, "signature": sign_text(test_wallet, raw)},
        headers={"X-Forwarded-Proto": "https"}
    )

    assert response.status_code == 200, response.text


def test_signature_from_other_wallet(client, test_wallet):
    nonce = client.get("/api/auth/nonce").json()["nonce"]
    raw = build_sign_in_message(test_wallet.address, nonce)

    response = client.post("/api/auth/verify", json={"message": raw, "signature": sign_text(Account.create(), raw)})

    assert_error(response, 401, "SIGNATURE_INVALID")


def test_me_requires_session(client):
    assert_error(client.get("/api/auth/me"), 401, "AUTHENTICATION_REQUIRED")


def test_anonymous_session_is_not_authenticated(client):
    client.get("/api/auth/nonce")

    assert_error(client.get("/api/auth/me"), 401, "AUTHENTICATION_REQUIRED")


def test_logout_destroys_session(client, test_wallet):
    sid = log_in(client, test_wallet)

    response = client.post("/api/auth/logout")

    assert response.status_code == 200
    assert response.json()["success"] is True
    use_session(client, sid)
    assert_error(client.get("/api/auth/me"), 401, "AUTHENTICATION_REQUIRED")


def test_user_lookup_requires_session(client, test_wallet):
    assert_error(client.get(f"/api/users/{test_wallet.address}"), 401, "AUTHENTICATION_REQUIRED")


def test_user_lookup_validates_address(client, test_wallet):
    log_in(client, test_wallet)

    assert_error(client.get("/api/users/not-a-wallet"), 400, "INVALID_INPUT")


def test_user_lookup_unknown_wallet(client, test_wallet):
    log_in(client, test_wallet)

    assert_error(client.get(f"/api/users/{Account.create().address}"), 404, "NOT_FOUND")


def test_user_lookup_reconciles_chain_balances(client, test_wallet, settlement):
    log_in(client, test_wallet)
    settlement.chain_balances[test_wallet.address.lower()] = (Decimal("0.75"), Decimal("640"))

    user = client.get(f"/api/users/{test_wallet.address}").json()["user"]

    assert Decimal(user["ethBalance"]) == Decimal("0.75")
    assert Decimal(user["energyBalance"]) == Decimal("640")


def test_user_lookup_keeps_cached_balances_when_chain_unreachable(client, test_wallet):
    log_in(client, test_wallet)

    response = client.get(f"/api/users/{test_wallet.address.lower()}")

    assert response.status_code == 200
    assert Decimal(response.json()["user"]["energyBalance"]) == Decimal("1000")


def test_error_carries_request_id(client):
    response = client.get("/api/auth/me", headers={"X-Request-ID": "req-123"})

    assert response.headers["X-Request-ID"] == "req-123"
    assert response.json()["error"]["request_id"] == "req-123"
