"""Flask application exposing the passkey ceremonies over HTTP."""

from __future__ import annotations

import logging
from typing import Optional

from flask import Flask, jsonify, request
from flask_cors import CORS
from pydantic import ValidationError

from .config import PasskeySettings
from .database import Database
from .engine import CeremonyEngine
from .entities import CredentialRecord, b64url_decode, b64url_encode
from .errors import CeremonyError, DuplicateCredential, ProtocolError
from .events import log_event, new_request_id
from .repository import (
    AccountRepository,
    CredentialRepository,
    SqlAccountRepository,
    SqlCredentialRepository,
)
from .resolver import UserResolver
from .schemas import (
    AuthenticateOptionsRequest,
    CredentialSummary,
    RegisterOptionsRequest,
    RPResponse,
)
from .sessions import MemorySessionStore, RedisSessionStore, SessionStore
from .verifier import Verifier, WebAuthnVerifier

LOGGER = logging.getLogger(__name__)

REGISTRATION_COOKIE = "registration"
AUTHENTICATION_COOKIE = "authentication"


def _log(stage: str, event: str, req: str, level: int = logging.INFO, **fields: object) -> None:
    log_event(LOGGER, "RP Server", stage, event, req, level, **fields)


def build_session_store(settings: PasskeySettings) -> SessionStore:
    if settings.session_backend == "redis":
        return RedisSessionStore.from_url(
            settings.redis_url,
            ttl=settings.session_ttl_seconds,
            timeout=settings.redis_timeout_seconds,
        )
    return MemorySessionStore(ttl=settings.session_ttl_seconds)


def _summary(record: CredentialRecord) -> dict:
    return CredentialSummary(
        credential_id=b64url_encode(record.credential_id),
        algorithm=record.algorithm,
        sign_count=record.sign_count,
        transports=record.transports,
        aaguid=record.aaguid,
        attestation_format=record.attestation_format,
        created_at=record.created_at.isoformat(),
        updated_at=record.updated_at.isoformat(),
    ).model_dump()


def _json_body() -> dict:
    payload = request.get_json(silent=True)
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ProtocolError("Request body must be a JSON object")
    return payload


def create_app(
    settings: Optional[PasskeySettings] = None,
    *,
    sessions: Optional[SessionStore] = None,
    accounts: Optional[AccountRepository] = None,
    credentials: Optional[CredentialRepository] = None,
    verifier: Optional[Verifier] = None,
) -> Flask:
    settings = settings or PasskeySettings()
    if accounts is None or credentials is None:
        db = Database(settings.database_url)
        db.create_all()
        accounts = accounts or SqlAccountRepository(db)
        credentials = credentials or SqlCredentialRepository(db)
    # an empty memory store is falsy, so compare against None
    if sessions is None:
        sessions = build_session_store(settings)
    if verifier is None:
        verifier = WebAuthnVerifier(settings.hosted_algorithms)

    resolver = UserResolver(accounts, credentials)
    engine = CeremonyEngine(settings, sessions, credentials, verifier)

    app = Flask(__name__)
    app.extensions["passkey_engine"] = engine
    CORS(app, origins=settings.cors_origins, supports_credentials=True)

    def set_ceremony_cookie(response, name: str, token: str):
        response.set_cookie(
            name,
            token,
            max_age=settings.session_ttl_seconds,
            path="/",
            httponly=True,
            secure=settings.cookie_secure,
            samesite="Lax",
        )
        return response

    @app.post("/registration/options")
    def registration_options():
        payload = RegisterOptionsRequest.model_validate(_json_body())
        req_id = new_request_id()
        _log("register", "options.start", req_id, user=payload.username, display=payload.display_name)
        account = resolver.find_or_create_by_display_name(payload.username, payload.display_name)
        _log("register", "user.ensure", req_id, account_id=account.id, user_handle=account.webauthn_id())
        options, token = engine.begin_registration(account, request_id=req_id)
        response = jsonify(RPResponse(success=True, data=options.model_dump()).model_dump())
        return set_ceremony_cookie(response, REGISTRATION_COOKIE, token)

    @app.post("/registration/verifications")
    def registration_verifications():
        req_id = new_request_id()
        record = engine.finish_registration(
            request.cookies.get(REGISTRATION_COOKIE), _json_body(), request_id=req_id
        )
        try:
            credentials.add(record)
        except DuplicateCredential:
            _log(
                "register",
                "verify.duplicate",
                req_id,
                level=logging.WARNING,
                account_id=record.account_id,
                credential_id=record.credential_id,
            )
            raise
        response = jsonify(
            RPResponse(
                success=True,
                message="Registration success!",
                data={"user_id": record.account_id, "credential": _summary(record)},
            ).model_dump()
        )
        response.status_code = 201
        response.delete_cookie(REGISTRATION_COOKIE, path="/")
        return response

    @app.post("/authentication/options")
    def authentication_options():
        payload = AuthenticateOptionsRequest.model_validate(_json_body())
        req_id = new_request_id()
        _log("authn", "options.start", req_id, user=payload.username)
        account = None
        if payload.username:
            account = resolver.find_by_name(payload.username)
            if account is None:
                _log("authn", "options.unknown_user", req_id, level=logging.WARNING, user=payload.username)
        options, token = engine.begin_login(account, request_id=req_id)
        response = jsonify(RPResponse(success=True, data=options.model_dump()).model_dump())
        return set_ceremony_cookie(response, AUTHENTICATION_COOKIE, token)

    @app.post("/authentication/verifications")
    def authentication_verifications():
        req_id = new_request_id()
        account_id = engine.finish_login(
            request.cookies.get(AUTHENTICATION_COOKIE), _json_body(), resolver, request_id=req_id
        )
        response = jsonify(RPResponse(success=True, data={"user_id": account_id}).model_dump())
        response.delete_cookie(AUTHENTICATION_COOKIE, path="/")
        return response

    @app.get("/users/<account_id>/credentials")
    def list_account_credentials(account_id: str):
        req_id = new_request_id()
        if accounts.get(account_id) is None:
            return jsonify(RPResponse(success=False, message="Not found").model_dump()), 404
        records = credentials.list_for_account(account_id)
        _log("credentials", "list", req_id, account_id=account_id, credential_count=len(records))
        return jsonify(RPResponse(success=True, data={"credentials": [_summary(r) for r in records]}).model_dump())

    @app.delete("/users/<account_id>/credentials/<credential_id>")
    def delete_account_credential(account_id: str, credential_id: str):
        req_id = new_request_id()
        try:
            raw_id = b64url_decode(credential_id)
        except ValueError as exc:
            raise ProtocolError("Credential id is not base64url") from exc
        deleted = credentials.delete(account_id, raw_id)
        _log("credentials", "delete", req_id, account_id=account_id, credential_id=raw_id, deleted=deleted)
        if not deleted:
            return jsonify(RPResponse(success=False, message="Not found").model_dump()), 404
        return "", 204

    @app.errorhandler(CeremonyError)
    def handle_ceremony_error(error: CeremonyError):
        LOGGER.warning("Ceremony failed: %s: %s", type(error).__name__, error)
        return (
            jsonify(RPResponse(success=False, message=error.public_message).model_dump()),
            error.status_code,
        )

    @app.errorhandler(ValidationError)
    def handle_validation_error(error: ValidationError):
        LOGGER.warning("Invalid request payload: %s", error.errors(include_url=False))
        return jsonify(RPResponse(success=False, message="Bad request").model_dump()), 400

    @app.errorhandler(400)
    def handle_bad_request(error):
        message = getattr(error, "description", "Bad Request")
        return jsonify(RPResponse(success=False, message=message).model_dump()), 400

    @app.get("/health")
    def health():
        return {"status": "ok"}

    return app
