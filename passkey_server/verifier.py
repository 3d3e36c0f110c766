"""WebAuthn response verification.

The engine orchestrates; this module owns the checks on the signed material:
client data, authenticator data, the attestation statement and the assertion
signature. CBOR parsing is ``cbor2``; signature math is ``fido2``'s COSE key
classes, or liboqs for the ML-DSA algorithms.
"""

from __future__ import annotations

import hashlib
import hmac
import json
from dataclasses import dataclass
from io import BytesIO
from typing import Any, Dict, Optional, Protocol, Sequence

import cbor2
from cryptography.exceptions import InvalidSignature
from fido2.cose import CoseKey

from .entities import b64url_decode, format_aaguid
from .errors import ChallengeMismatch, ProtocolError, VerificationFailed

FLAG_UP = 0x01
FLAG_UV = 0x04
FLAG_AT = 0x40

MLDSA_ALGORITHMS = frozenset({-48, -49, -50})


@dataclass
class AuthenticatorData:
    rp_id_hash: bytes
    flags: int
    sign_count: int
    aaguid: Optional[bytes] = None
    credential_id: Optional[bytes] = None
    credential_public_key: Optional[bytes] = None


@dataclass
class AttestedCredential:
    credential_id: bytes
    public_key: bytes
    algorithm: int
    sign_count: int
    flags: int
    aaguid: Optional[str]
    fmt: str


class Verifier(Protocol):
    def verify_attestation(
        self,
        client_data_json: bytes,
        attestation_object: bytes,
        expected_challenge: bytes,
        expected_origin: str,
        expected_rp_id: str,
        *,
        require_user_verification: bool = False,
    ) -> AttestedCredential:
        ...

    def verify_assertion(
        self,
        client_data_json: bytes,
        authenticator_data: bytes,
        signature: bytes,
        public_key: bytes,
        expected_challenge: bytes,
        expected_origin: str,
        expected_rp_id: str,
        *,
        require_user_verification: bool = False,
    ) -> int:
        ...


def parse_client_data(client_data_json: bytes) -> Dict[str, Any]:
    try:
        client_data = json.loads(client_data_json)
    except (UnicodeDecodeError, ValueError) as exc:
        raise ProtocolError("clientDataJSON is not valid JSON") from exc
    if not isinstance(client_data, dict):
        raise ProtocolError("clientDataJSON must be an object")
    for key in ("type", "challenge", "origin"):
        if not isinstance(client_data.get(key), str):
            raise ProtocolError(f"clientDataJSON is missing {key}")
    return client_data


def client_data_challenge(client_data: Dict[str, Any]) -> bytes:
    try:
        return b64url_decode(client_data["challenge"])
    except ValueError as exc:
        raise ProtocolError("Challenge is not base64url") from exc


def check_challenge(client_data: Dict[str, Any], expected_challenge: bytes) -> None:
    if not hmac.compare_digest(client_data_challenge(client_data), expected_challenge):
        raise ChallengeMismatch("Challenge mismatch")


def parse_authenticator_data(data: bytes) -> AuthenticatorData:
    if len(data) < 37:
        raise ProtocolError("Authenticator data too short")
    idx = 0
    rp_id_hash = data[idx : idx + 32]
    idx += 32
    flags = data[idx]
    idx += 1
    sign_count = int.from_bytes(data[idx : idx + 4], "big")
    idx += 4

    parsed = AuthenticatorData(rp_id_hash=rp_id_hash, flags=flags, sign_count=sign_count)
    if flags & FLAG_AT:
        if len(data) < idx + 18:
            raise ProtocolError("Malformed attested credential data")
        parsed.aaguid = data[idx : idx + 16]
        idx += 16
        cred_len = int.from_bytes(data[idx : idx + 2], "big")
        idx += 2
        if cred_len == 0 or len(data) < idx + cred_len:
            raise ProtocolError("Malformed credential id")
        parsed.credential_id = data[idx : idx + cred_len]
        idx += cred_len
        stream = BytesIO(data[idx:])
        try:
            cose_key = cbor2.CBORDecoder(stream).decode()
        except (cbor2.CBORDecodeError, EOFError) as exc:
            raise ProtocolError("Malformed credential public key") from exc
        # extensions may follow the key, so store it re-encoded on its own
        parsed.credential_public_key = cbor2.dumps(cose_key)
    return parsed


def load_cose_key(public_key: bytes) -> Dict[int, Any]:
    try:
        cose = cbor2.loads(public_key)
    except (cbor2.CBORDecodeError, EOFError) as exc:
        raise ProtocolError("Malformed COSE key") from exc
    if not isinstance(cose, dict) or not isinstance(cose.get(3), int):
        raise ProtocolError("COSE key has no algorithm")
    return cose


def verify_signature(public_key: bytes, message: bytes, signature: bytes) -> None:
    cose = load_cose_key(public_key)
    algorithm = cose[3]
    if algorithm in MLDSA_ALGORITHMS:
        from . import pqcrypto

        raw_key = cose.get(-1)
        if not isinstance(raw_key, bytes) or not pqcrypto.verify(algorithm, raw_key, message, signature):
            raise VerificationFailed("Invalid signature")
        return
    try:
        CoseKey.parse(cose).verify(message, signature)
    except InvalidSignature as exc:
        raise VerificationFailed("Invalid signature") from exc
    except (KeyError, TypeError, ValueError, NotImplementedError) as exc:
        raise VerificationFailed(f"Cannot verify with COSE algorithm {algorithm}") from exc


def check_public_key(public_key: bytes) -> int:
    """Make sure the COSE key can be materialised; returns its algorithm.

    fido2 only builds the cryptography key inside ``verify``, so a throwaway
    verification over an empty signature forces the decode. A well formed key
    rejects the signature; a broken one fails before that.
    """
    cose = load_cose_key(public_key)
    algorithm = cose[3]
    if algorithm in MLDSA_ALGORITHMS:
        if not isinstance(cose.get(-1), bytes) or not cose[-1]:
            raise VerificationFailed("ML-DSA key carries no public key bytes")
        return algorithm
    try:
        CoseKey.parse(cose).verify(b"", b"")
    except InvalidSignature:
        return algorithm
    except (KeyError, TypeError, ValueError, NotImplementedError) as exc:
        raise VerificationFailed(f"Unusable COSE key for algorithm {algorithm}") from exc
    raise VerificationFailed("COSE key accepted an empty signature")


class WebAuthnVerifier:
    """Checks registration and login responses against the RP configuration."""

    def __init__(self, allowed_algorithms: Sequence[int]):
        self.allowed_algorithms = tuple(allowed_algorithms)

    def _check_client_data(
        self,
        client_data: Dict[str, Any],
        expected_type: str,
        expected_challenge: bytes,
        expected_origin: str,
    ) -> None:
        if client_data["type"] != expected_type:
            raise VerificationFailed(f"Unexpected client data type {client_data['type']!r}")
        check_challenge(client_data, expected_challenge)
        if client_data["origin"] != expected_origin:
            raise VerificationFailed(f"Origin mismatch: {client_data['origin']!r}")
        if client_data.get("crossOrigin") is True:
            raise VerificationFailed("Cross-origin ceremonies are not accepted")

    def _check_authenticator_data(
        self,
        auth_data: AuthenticatorData,
        expected_rp_id: str,
        require_user_verification: bool,
    ) -> None:
        expected_hash = hashlib.sha256(expected_rp_id.encode("idna")).digest()
        if not hmac.compare_digest(auth_data.rp_id_hash, expected_hash):
            raise VerificationFailed("RP id hash mismatch")
        if not auth_data.flags & FLAG_UP:
            raise VerificationFailed("User presence flag not set")
        if require_user_verification and not auth_data.flags & FLAG_UV:
            raise VerificationFailed("User verification required")

    def verify_attestation(
        self,
        client_data_json: bytes,
        attestation_object: bytes,
        expected_challenge: bytes,
        expected_origin: str,
        expected_rp_id: str,
        *,
        require_user_verification: bool = False,
    ) -> AttestedCredential:
        client_data = parse_client_data(client_data_json)
        self._check_client_data(client_data, "webauthn.create", expected_challenge, expected_origin)

        try:
            attestation = cbor2.loads(attestation_object)
        except (cbor2.CBORDecodeError, EOFError) as exc:
            raise ProtocolError("Malformed attestationObject") from exc
        if not isinstance(attestation, dict):
            raise ProtocolError("attestationObject must be a map")
        fmt = attestation.get("fmt")
        auth_data_bytes = attestation.get("authData")
        statement = attestation.get("attStmt")
        if not isinstance(fmt, str) or not isinstance(auth_data_bytes, bytes) or not isinstance(statement, dict):
            raise ProtocolError("attestationObject is missing fmt, authData or attStmt")

        auth_data = parse_authenticator_data(auth_data_bytes)
        self._check_authenticator_data(auth_data, expected_rp_id, require_user_verification)
        if auth_data.credential_id is None or auth_data.credential_public_key is None:
            raise ProtocolError("Missing attested credential data")

        algorithm = load_cose_key(auth_data.credential_public_key)[3]
        if algorithm not in self.allowed_algorithms:
            raise VerificationFailed(f"Unsupported algorithm {algorithm}")
        check_public_key(auth_data.credential_public_key)

        client_data_hash = hashlib.sha256(client_data_json).digest()
        self._check_statement(fmt, statement, auth_data_bytes + client_data_hash, auth_data, algorithm)

        return AttestedCredential(
            credential_id=auth_data.credential_id,
            public_key=auth_data.credential_public_key,
            algorithm=algorithm,
            sign_count=auth_data.sign_count,
            flags=auth_data.flags,
            aaguid=format_aaguid(auth_data.aaguid) if auth_data.aaguid else None,
            fmt=fmt,
        )

    def _check_statement(
        self,
        fmt: str,
        statement: Dict[str, Any],
        signed: bytes,
        auth_data: AuthenticatorData,
        algorithm: int,
    ) -> None:
        if fmt == "none":
            if statement:
                raise VerificationFailed("Attestation format 'none' carries a statement")
            return
        if fmt == "packed":
            if "x5c" in statement:
                raise VerificationFailed("Certificate attestation is not supported")
            if statement.get("alg") != algorithm or not isinstance(statement.get("sig"), bytes):
                raise VerificationFailed("Packed self attestation does not match the credential key")
            verify_signature(auth_data.credential_public_key, signed, statement["sig"])
            return
        raise VerificationFailed(f"Unsupported attestation format {fmt!r}")

    def verify_assertion(
        self,
        client_data_json: bytes,
        authenticator_data: bytes,
        signature: bytes,
        public_key: bytes,
        expected_challenge: bytes,
        expected_origin: str,
        expected_rp_id: str,
        *,
        require_user_verification: bool = False,
    ) -> int:
        client_data = parse_client_data(client_data_json)
        self._check_client_data(client_data, "webauthn.get", expected_challenge, expected_origin)
        auth_data = parse_authenticator_data(authenticator_data)
        self._check_authenticator_data(auth_data, expected_rp_id, require_user_verification)
        message = authenticator_data + hashlib.sha256(client_data_json).digest()
        verify_signature(public_key, message, signature)
        return auth_data.sign_count
