"""Registration and authentication ceremonies.

The engine keeps no state of its own: challenges live in the session store
between ``begin_*`` and ``finish_*``, key material in the credential
repository. Every ``finish_*`` consumes its session first, so a token is spent
whether the attempt succeeds or not.
"""

from __future__ import annotations

import logging
import secrets
from typing import Any, Dict, Iterable, List, Optional, Tuple

from pydantic import ValidationError

from .config import PasskeySettings
from .entities import (
    Account,
    CeremonyKind,
    CeremonySession,
    CredentialRecord,
    b64url_decode,
    b64url_encode,
    utcnow,
)
from .errors import (
    AccountNotFound,
    CeremonyError,
    CredentialExcluded,
    CredentialNotFound,
    PossibleCloneDetected,
    ProtocolError,
    SessionNotFound,
    VerificationFailed,
)
from .events import log_event, new_request_id
from .repository import CredentialRepository
from .resolver import UserResolver
from .schemas import (
    AuthenticationCredential,
    AuthenticatorSelectionCriteria,
    PubKeyCredParam,
    PublicKeyCredentialCreationOptions,
    PublicKeyCredentialDescriptor,
    PublicKeyCredentialRequestOptions,
    RegistrationCredential,
    RelyingPartyEntity,
    UserEntity,
)
from .sessions import SessionStore
from .verifier import Verifier, check_challenge, parse_client_data

LOGGER = logging.getLogger(__name__)

CHALLENGE_SIZE = 32


def _log(stage: str, event: str, req: str, level: int = logging.INFO, **fields: object) -> None:
    log_event(LOGGER, "Ceremony", stage, event, req, level, **fields)


def _decode(name: str, value: str) -> bytes:
    try:
        return b64url_decode(value)
    except ValueError as exc:
        raise ProtocolError(f"{name} is not base64url") from exc


def check_sign_count(stored: int, reported: int) -> None:
    """Reject a counter that did not move forward.

    Authenticators without a counter always report zero; that case is accepted
    only while the stored value is zero as well.
    """
    if reported > stored or (reported == 0 and stored == 0):
        return
    raise PossibleCloneDetected(f"Sign count {reported} does not exceed stored {stored}")


class CeremonyEngine:
    def __init__(
        self,
        settings: PasskeySettings,
        sessions: SessionStore,
        credentials: CredentialRepository,
        verifier: Verifier,
    ) -> None:
        self.settings = settings
        self.sessions = sessions
        self.credentials = credentials
        self.verifier = verifier

    def _consume(self, token: Optional[str], kind: CeremonyKind, stage: str, req_id: str) -> CeremonySession:
        try:
            if not token:
                raise SessionNotFound("No session token")
            session = self.sessions.consume(token)
            if session.kind != kind:
                raise SessionNotFound(f"Session is for {session.kind}, not {kind}")
        except SessionNotFound as exc:
            _log(stage, "verify.expired", req_id, level=logging.WARNING, detail=str(exc))
            raise
        return session

    # Registration ------------------------------------------------------
    def begin_registration(
        self,
        account: Account,
        exclude_credential_ids: Optional[Iterable[bytes]] = None,
        *,
        resident_key: Optional[str] = None,
        user_verification: Optional[str] = None,
        request_id: Optional[str] = None,
    ) -> Tuple[PublicKeyCredentialCreationOptions, str]:
        req_id = request_id or new_request_id()
        existing = {c.credential_id: c for c in account.webauthn_credentials()}
        if exclude_credential_ids is None:
            excluded: List[bytes] = list(existing)
        else:
            excluded = list(exclude_credential_ids)
        resident_key = resident_key or self.settings.resident_key
        user_verification = user_verification or self.settings.user_verification

        challenge = secrets.token_bytes(CHALLENGE_SIZE)
        token = self.sessions.create(
            "registration",
            challenge,
            account.id,
            excluded_credential_ids=excluded,
            user_verification=user_verification,
        )
        options = PublicKeyCredentialCreationOptions(
            challenge=b64url_encode(challenge),
            rp=RelyingPartyEntity(id=self.settings.rp_id, name=self.settings.rp_name),
            user=UserEntity(
                id=b64url_encode(account.webauthn_id()),
                name=account.name,
                displayName=account.webauthn_display_name(),
            ),
            pubKeyCredParams=[PubKeyCredParam(alg=alg) for alg in self.settings.hosted_algorithms],
            timeout=self.settings.timeout_ms,
            authenticatorSelection=AuthenticatorSelectionCriteria(
                residentKey=resident_key,
                requireResidentKey=resident_key == "required",
                userVerification=user_verification,
            ),
            excludeCredentials=[
                PublicKeyCredentialDescriptor(
                    id=b64url_encode(cred_id),
                    transports=existing[cred_id].transports if cred_id in existing else [],
                )
                for cred_id in excluded
            ],
        )
        _log(
            "register",
            "options.success",
            req_id,
            user_handle=account.webauthn_id(),
            excluded=len(excluded),
        )
        return options, token

    def finish_registration(
        self,
        token: Optional[str],
        payload: Dict[str, Any],
        request_id: Optional[str] = None,
    ) -> CredentialRecord:
        """Validate an attestation and build the record for the caller to persist."""
        req_id = request_id or new_request_id()
        _log("register", "verify.start", req_id)
        session = self._consume(token, "registration", "register", req_id)
        try:
            record = self._verify_registration(session, payload)
        except CeremonyError as exc:
            _log(
                "register",
                "verify.rejected",
                req_id,
                level=logging.WARNING,
                reason=type(exc).__name__,
                detail=str(exc),
            )
            raise
        _log(
            "register",
            "verify.success",
            req_id,
            account_id=record.account_id,
            credential_id=record.credential_id,
            algorithm=record.algorithm,
            aaguid=record.aaguid,
        )
        return record

    def _verify_registration(self, session: CeremonySession, payload: Dict[str, Any]) -> CredentialRecord:
        try:
            credential = RegistrationCredential.model_validate(payload)
        except ValidationError as exc:
            raise ProtocolError("Malformed registration response") from exc
        raw_id = _decode("rawId", credential.rawId)
        if raw_id in session.excluded_credential_ids:
            raise CredentialExcluded("Authenticator is already registered")
        client_data_json = _decode("clientDataJSON", credential.response.clientDataJSON)
        attestation_object = _decode("attestationObject", credential.response.attestationObject)

        check_challenge(parse_client_data(client_data_json), session.challenge)
        attested = self.verifier.verify_attestation(
            client_data_json,
            attestation_object,
            session.challenge,
            self.settings.origin,
            self.settings.rp_id,
            require_user_verification=session.user_verification == "required",
        )
        if attested.credential_id != raw_id:
            raise VerificationFailed("Attested credential id does not match rawId")

        now = utcnow()
        return CredentialRecord(
            credential_id=attested.credential_id,
            account_id=session.bound_account_id,
            public_key=attested.public_key,
            algorithm=attested.algorithm,
            sign_count=attested.sign_count,
            transports=list(credential.response.transports),
            flags=attested.flags,
            aaguid=attested.aaguid,
            attestation_format=attested.fmt,
            created_at=now,
            updated_at=now,
        )

    # Authentication ----------------------------------------------------
    def begin_login(
        self,
        account: Optional[Account] = None,
        *,
        user_verification: Optional[str] = None,
        request_id: Optional[str] = None,
    ) -> Tuple[PublicKeyCredentialRequestOptions, str]:
        req_id = request_id or new_request_id()
        user_verification = user_verification or self.settings.user_verification
        challenge = secrets.token_bytes(CHALLENGE_SIZE)
        allow: List[PublicKeyCredentialDescriptor] = []
        bound_account_id = None
        if account is not None:
            bound_account_id = account.id
            allow = [
                PublicKeyCredentialDescriptor(id=b64url_encode(c.credential_id), transports=c.transports)
                for c in account.webauthn_credentials()
            ]
        token = self.sessions.create(
            "authentication",
            challenge,
            bound_account_id,
            user_verification=user_verification,
        )
        options = PublicKeyCredentialRequestOptions(
            challenge=b64url_encode(challenge),
            rpId=self.settings.rp_id,
            timeout=self.settings.timeout_ms,
            userVerification=user_verification,
            allowCredentials=allow,
        )
        _log(
            "authn",
            "options.success",
            req_id,
            discoverable=account is None,
            credential_count=len(allow),
        )
        return options, token

    def finish_login(
        self,
        token: Optional[str],
        payload: Dict[str, Any],
        resolver: UserResolver,
        request_id: Optional[str] = None,
    ) -> str:
        """Verify an assertion and advance the counter; returns the account id."""
        req_id = request_id or new_request_id()
        _log("authn", "verify.start", req_id)
        session = self._consume(token, "authentication", "authn", req_id)
        try:
            account, record, new_count = self._verify_login(session, payload, resolver)
        except PossibleCloneDetected as exc:
            _log("authn", "verify.clone", req_id, level=logging.WARNING, detail=str(exc))
            raise
        except CeremonyError as exc:
            _log(
                "authn",
                "verify.rejected",
                req_id,
                level=logging.WARNING,
                reason=type(exc).__name__,
                detail=str(exc),
            )
            raise
        _log(
            "authn",
            "verify.success",
            req_id,
            account_id=account.id,
            credential_id=record.credential_id,
            sign_count=new_count,
        )
        return account.id

    def _verify_login(
        self,
        session: CeremonySession,
        payload: Dict[str, Any],
        resolver: UserResolver,
    ) -> Tuple[Account, CredentialRecord, int]:
        try:
            credential = AuthenticationCredential.model_validate(payload)
        except ValidationError as exc:
            raise ProtocolError("Malformed authentication response") from exc
        credential_id = _decode("rawId", credential.rawId)
        user_handle = None
        if credential.response.userHandle:
            user_handle = _decode("userHandle", credential.response.userHandle)
        client_data_json = _decode("clientDataJSON", credential.response.clientDataJSON)
        authenticator_data = _decode("authenticatorData", credential.response.authenticatorData)
        signature = _decode("signature", credential.response.signature)

        if session.bound_account_id is not None:
            account = resolver.resolve_by_id(session.bound_account_id)
            if user_handle is not None and user_handle != account.webauthn_id():
                raise AccountNotFound("User handle does not belong to the bound account")
        else:
            if user_handle is None:
                raise ProtocolError("Discoverable login requires a user handle")
            account = resolver.resolve(credential_id, user_handle)

        record = next(
            (c for c in account.webauthn_credentials() if c.credential_id == credential_id),
            None,
        )
        if record is None:
            raise CredentialNotFound("Credential is not registered to the account")

        check_challenge(parse_client_data(client_data_json), session.challenge)
        new_count = self.verifier.verify_assertion(
            client_data_json,
            authenticator_data,
            signature,
            record.public_key,
            session.challenge,
            self.settings.origin,
            self.settings.rp_id,
            require_user_verification=session.user_verification == "required",
        )
        check_sign_count(record.sign_count, new_count)
        if not self.credentials.update_sign_count(record.credential_id, record.sign_count, new_count):
            raise PossibleCloneDetected("Sign count changed by a concurrent login")
        return account, record, new_count
