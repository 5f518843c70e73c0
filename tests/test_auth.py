from __future__ import annotations

from datetime import timedelta

import pytest
from jose import jwt

import auth
import errors
from config import ALGORITHM, TOKEN_AUDIENCE, TOKEN_ISSUER


def test_password_hash_verifies_and_is_salted() -> None:
	first = auth.hash_password("Abcdef12")
	second = auth.hash_password("Abcdef12")
	assert first != second
	assert auth.verify_password("Abcdef12", first)
	assert not auth.verify_password("Abcdef13", first)
	assert not auth.verify_password("Abcdef12", "not-a-bcrypt-hash")


def test_bcrypt_cost_is_at_least_ten() -> None:
	rounds = int(auth.hash_password("Abcdef12").split("$")[2])
	assert rounds >= 10


@pytest.mark.parametrize("password", ["short1A", "alllowercase1", "ALLUPPERCASE1", "NoDigitsHere"])
def test_weak_passwords_are_rejected(password: str) -> None:
	with pytest.raises(errors.ValidationError):
		auth.validate_password_strength(password)


def test_issued_token_carries_claims() -> None:
	token = auth.issue_token("abc123", "refresh", {"ver": 2})
	payload = auth.decode_token(token)
	assert payload["sub"] == "abc123"
	assert payload["type"] == "refresh"
	assert payload["ver"] == 2
	assert payload["exp"] - payload["iat"] == int(timedelta(days=30).total_seconds())


def test_expired_token_is_reported_as_expired() -> None:
	token = auth.issue_token("abc123", expires_delta=timedelta(seconds=-10))
	with pytest.raises(errors.TokenExpired):
		auth.decode_token(token)


def test_token_signed_with_other_secret_is_invalid() -> None:
	forged = jwt.encode(
		{"sub": "abc123", "type": "access", "iss": TOKEN_ISSUER, "aud": TOKEN_AUDIENCE},
		"not-the-secret",
		algorithm=ALGORITHM,
	)
	with pytest.raises(errors.InvalidToken):
		auth.decode_token(forged)


def test_admin_key_levels() -> None:
	assert auth.verify_admin_key("admin123") == "standard"
	assert auth.verify_admin_key("super-admin-2024") == "super"
	assert auth.verify_admin_key("guess") is None
	assert auth.verify_admin_key(None) is None


# Endpoint behaviour

def test_missing_token_is_unauthorized(client) -> None:
	resp = client.get("/api/users/profile")
	assert resp.status_code == 401
	assert resp.json()["code"] == "UNAUTHORIZED"


def test_expired_token_is_rejected(client, user) -> None:
	token = auth.issue_token(user["user"]["id"], expires_delta=timedelta(seconds=-10))
	resp = client.get("/api/users/profile", headers={"Authorization": f"Bearer {token}"})
	assert resp.status_code == 401
	assert resp.json()["code"] == "TOKEN_EXPIRED"


def test_refresh_token_cannot_be_used_as_access_token(client, user) -> None:
	resp = client.get("/api/users/profile", headers={"Authorization": f"Bearer {user['refresh_token']}"})
	assert resp.status_code == 401
	assert resp.json()["code"] == "INVALID_TOKEN"


def test_token_of_deleted_user_is_rejected(client, db, user, auth_headers) -> None:
	db["user"].delete_many({})
	resp = client.get("/api/users/profile", headers=auth_headers)
	assert resp.status_code == 401
	assert resp.json()["code"] == "USER_NOT_FOUND"


def test_deactivated_account_is_rejected(client, db, user, auth_headers) -> None:
	db["user"].update_one({"email": "a@b.com"}, {"$set": {"is_active": False}})
	resp = client.get("/api/users/profile", headers=auth_headers)
	assert resp.status_code == 401
	assert resp.json()["code"] == "ACCOUNT_DEACTIVATED"


def test_refresh_token_exchange(client, user) -> None:
	resp = client.post("/api/users/refresh-token", json={"refreshToken": user["refresh_token"]})
	assert resp.status_code == 200
	fresh = resp.json()
	assert fresh["user"]["email"] == "a@b.com"
	profile = client.get("/api/users/profile", headers={"Authorization": f"Bearer {fresh['token']}"})
	assert profile.status_code == 200


def test_access_token_cannot_refresh(client, user) -> None:
	resp = client.post("/api/users/refresh-token", json={"refresh_token": user["token"]})
	assert resp.status_code == 401


def test_authenticated_requests_are_rate_limited(client, auth_headers, monkeypatch) -> None:
	monkeypatch.setattr(auth, "AUTH_MAX_REQUESTS", 2)
	assert client.get("/api/users/profile", headers=auth_headers).status_code == 200
	assert client.get("/api/users/profile", headers=auth_headers).status_code == 200
	resp = client.get("/api/users/profile", headers=auth_headers)
	assert resp.status_code == 429
	assert resp.json()["code"] == "RATE_LIMITED"
	assert resp.headers["Retry-After"].isdigit()


def test_admin_verify_issues_usable_token(client, user) -> None:
	resp = client.post("/api/admin/verify", json={"adminKey": "super-admin-2024"})
	assert resp.status_code == 200
	body = resp.json()
	assert body["is_admin"] is True
	assert body["level"] == "super"

	users = client.get("/api/users", headers={"Authorization": f"Bearer {body['token']}"})
	assert users.status_code == 200
	assert [u["email"] for u in users.json()] == ["a@b.com"]
	assert "password_hash" not in users.json()[0]


def test_admin_verify_rejects_bad_key_and_locks_out(client) -> None:
	for _ in range(5):
		resp = client.post("/api/admin/verify", json={"adminKey": "wrong"})
		assert resp.status_code == 403
		assert resp.json()["code"] == "FORBIDDEN"
	resp = client.post("/api/admin/verify", json={"adminKey": "wrong"})
	assert resp.status_code == 429


def test_admin_routes_reject_user_tokens(client, auth_headers) -> None:
	resp = client.get("/api/users", headers=auth_headers)
	assert resp.status_code == 403


def test_admin_key_header_grants_access(client, admin_headers) -> None:
	resp = client.get("/api/admin/dashboard", headers=admin_headers)
	assert resp.status_code == 200
	assert resp.json()["level"] == "standard"
	assert resp.json()["total_users"] == 0


def test_valid_admin_key_is_refused_during_lockout(client, admin_headers) -> None:
	for _ in range(5):
		assert client.post("/api/admin/verify", json={"adminKey": "wrong"}).status_code == 403

	resp = client.post("/api/admin/verify", json={"adminKey": "admin123"})
	assert resp.status_code == 429
	assert resp.json()["code"] == "RATE_LIMITED"
	assert client.get("/api/admin/dashboard", headers=admin_headers).status_code == 429


def test_successful_admin_verify_clears_failures(client) -> None:
	for _ in range(4):
		client.post("/api/admin/verify", json={"adminKey": "wrong"})
	assert client.post("/api/admin/verify", json={"adminKey": "admin123"}).status_code == 200

	resp = client.post("/api/admin/verify", json={"adminKey": "wrong"})
	assert resp.status_code == 403
	assert "4 attempts remaining" in resp.json()["error"]
