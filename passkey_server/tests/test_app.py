from __future__ import annotations

from passkey_server.app import create_app
from passkey_server.entities import b64url_encode
from passkey_server.sessions import MemorySessionStore
from passkey_server.verifier import WebAuthnVerifier


def start_registration(client, username="alice", display_name=None):
    body = {"username": username}
    if display_name:
        body["display_name"] = display_name
    response = client.post("/registration/options", json=body)
    assert response.status_code == 200
    return response


def register(client, authenticator, username="alice", **kwargs):
    options = start_registration(client, username).get_json()["data"]
    credential = authenticator.make_credential(options, **kwargs)
    return client.post("/registration/verifications", json=credential)


def login(client, authenticator, username=None, **kwargs):
    body = {"username": username} if username else {}
    options = client.post("/authentication/options", json=body).get_json()["data"]
    assertion = authenticator.get_assertion(options, **kwargs)
    return client.post("/authentication/verifications", json=assertion)


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.get_json() == {"status": "ok"}


def test_registration_options_set_http_only_cookie(client):
    response = start_registration(client, "alice", "Alice")

    cookie = next(h for h in response.headers.getlist("Set-Cookie") if h.startswith("registration="))
    assert "HttpOnly" in cookie
    assert "SameSite=Lax" in cookie
    assert "Max-Age=300" in cookie

    options = response.get_json()["data"]
    assert options["rp"] == {"id": "localhost", "name": "Test RP"}
    assert options["user"]["name"] == "alice"
    assert options["user"]["displayName"] == "Alice"
    assert options["authenticatorSelection"]["residentKey"] == "required"


def test_registration_and_discoverable_login(client, authenticator):
    registered = register(client, authenticator)
    assert registered.status_code == 201
    body = registered.get_json()
    assert body["success"] is True
    user_id = body["data"]["user_id"]

    response = login(client, authenticator)
    assert response.status_code == 200
    assert response.get_json()["data"] == {"user_id": user_id}


def test_registration_cannot_be_replayed(client, authenticator):
    options = start_registration(client).get_json()["data"]
    token = client.get_cookie("registration").value
    credential = authenticator.make_credential(options)
    assert client.post("/registration/verifications", json=credential).status_code == 201

    client.set_cookie("registration", token)
    replay = client.post("/registration/verifications", json=credential)
    assert replay.status_code == 400
    assert replay.get_json() == {"success": False, "message": "Session expired, please retry", "data": None}


def test_verification_without_cookie_is_expired(client):
    response = client.post("/authentication/verifications", json={})
    assert response.status_code == 400
    assert response.get_json()["message"] == "Session expired, please retry"


def test_duplicate_credential_conflicts(client, authenticator):
    first = register(client, authenticator, "alice")
    assert first.status_code == 201
    credential_id = next(iter(authenticator.credentials))

    second = register(client, authenticator, "bob", credential_id=credential_id)
    assert second.status_code == 409
    assert second.get_json()["message"] == "Credential already registered"


def test_failed_login_is_opaque(client, authenticator):
    register(client, authenticator)

    wrong_origin = login(client, authenticator, origin="https://evil.example")
    assert wrong_origin.status_code == 401
    assert wrong_origin.get_json()["message"] == "Authentication failed"

    options = client.post("/authentication/options", json={}).get_json()["data"]
    assertion = authenticator.get_assertion(options)
    assertion["response"]["signature"] = b64url_encode(b"\x30\x06\x02\x01\x01\x02\x01\x01")
    tampered = client.post("/authentication/verifications", json=assertion)
    assert tampered.status_code == 401
    assert tampered.get_json()["message"] == "Authentication failed"


def test_clone_warning_is_opaque(client, authenticator):
    register(client, authenticator, sign_count=5)

    response = login(client, authenticator, sign_count=5)
    assert response.status_code == 401
    assert response.get_json()["message"] == "Authentication failed"


def test_unknown_login_hint_falls_back_to_discoverable(client, authenticator):
    register(client, authenticator)

    response = client.post("/authentication/options", json={"username": "mallory"})
    assert response.status_code == 200
    assert response.get_json()["data"]["allowCredentials"] == []


def test_login_hint_lists_credentials(client, authenticator):
    register(client, authenticator)
    credential_id = next(iter(authenticator.credentials))

    options = client.post("/authentication/options", json={"username": "alice"}).get_json()["data"]
    assert [c["id"] for c in options["allowCredentials"]] == [b64url_encode(credential_id)]


def test_credentials_listing_and_delete(client, authenticator):
    user_id = register(client, authenticator).get_json()["data"]["user_id"]
    credential_id = b64url_encode(next(iter(authenticator.credentials)))

    listing = client.get(f"/users/{user_id}/credentials")
    assert listing.status_code == 200
    summaries = listing.get_json()["data"]["credentials"]
    assert [s["credential_id"] for s in summaries] == [credential_id]
    assert "public_key" not in summaries[0]
    assert summaries[0]["transports"] == ["internal", "hybrid"]

    assert client.delete(f"/users/{user_id}/credentials/{credential_id}").status_code == 204
    assert client.delete(f"/users/{user_id}/credentials/{credential_id}").status_code == 404
    assert client.get(f"/users/{user_id}/credentials").get_json()["data"]["credentials"] == []

    response = login(client, authenticator)
    assert response.status_code == 401


def test_unknown_account_listing_is_not_found(client):
    assert client.get("/users/00000000-0000-0000-0000-000000000000/credentials").status_code == 404


def test_bad_request_bodies(client):
    missing_username = client.post("/registration/options", json={})
    assert missing_username.status_code == 400
    assert missing_username.get_json()["success"] is False

    not_an_object = client.post("/registration/options", json=["alice"])
    assert not_an_object.status_code == 400
    assert not_an_object.get_json()["message"] == "Bad request"

    start_registration(client)
    malformed = client.post("/registration/verifications", json={"id": "abc"})
    assert malformed.status_code == 400


def test_app_uses_injected_parts(settings, accounts, credentials, clock):
    verifier = WebAuthnVerifier([-7])
    store = MemorySessionStore(ttl=1, clock=clock)
    app = create_app(
        settings, sessions=store, accounts=accounts, credentials=credentials, verifier=verifier
    )

    engine = app.extensions["passkey_engine"]
    assert engine.sessions is store
    assert engine.verifier is verifier
    assert engine.credentials is credentials


def test_abandoned_options_do_not_accumulate(settings, accounts, credentials, clock):
    store = MemorySessionStore(ttl=settings.session_ttl_seconds, clock=clock)
    app = create_app(settings, sessions=store, accounts=accounts, credentials=credentials)
    client = app.test_client()

    for _ in range(20):
        assert client.post("/authentication/options", json={}).status_code == 200
    assert len(store) == 20
    clock.now += settings.session_ttl_seconds

    assert client.post("/authentication/options", json={}).status_code == 200
    assert len(store) == 1


def test_unusable_credential_key_is_not_registered(client, authenticator, credentials, keys_without_x):
    response = register(client, authenticator)

    assert response.status_code == 401
    assert credentials.get(next(iter(authenticator.credentials))) is None


def test_credential_id_outside_base64url_alphabet_is_rejected(client, authenticator):
    user_id = register(client, authenticator).get_json()["data"]["user_id"]

    response = client.delete(f"/users/{user_id}/credentials/AA!!EC")
    assert response.status_code == 400
