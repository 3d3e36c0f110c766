"""Domain records shared by the ceremony engine, stores and resolver."""

from __future__ import annotations

import base64
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Literal, Optional, Protocol

from pydantic import BaseModel, Field

CeremonyKind = Literal["registration", "authentication"]


def b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def b64url_decode(data: str) -> bytes:
    padding = "=" * (-len(data) % 4)
    return base64.b64decode(data + padding, altchars=b"-_", validate=True)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_aaguid(aaguid: bytes) -> str:
    """Render a 16 byte AAGUID the way authenticator catalogues list them."""
    return str(uuid.UUID(bytes=aaguid))


def user_handle_for(account_id: str) -> bytes:
    """Stable WebAuthn user handle: the 16 raw bytes of the account UUID."""
    return uuid.UUID(account_id).bytes


@dataclass
class CredentialRecord:
    credential_id: bytes
    account_id: str
    public_key: bytes
    algorithm: int
    sign_count: int = 0
    transports: List[str] = field(default_factory=list)
    flags: int = 0
    aaguid: Optional[str] = None
    attestation_format: str = "none"
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


class WebAuthnUser(Protocol):
    def webauthn_id(self) -> bytes:
        ...

    def webauthn_display_name(self) -> str:
        ...

    def webauthn_credentials(self) -> List[CredentialRecord]:
        ...


@dataclass
class Account:
    id: str
    name: str
    display_name: str
    credentials: List[CredentialRecord] = field(default_factory=list)

    @classmethod
    def new(cls, name: str, display_name: Optional[str] = None) -> "Account":
        return cls(id=str(uuid.uuid4()), name=name, display_name=display_name or name)

    def webauthn_id(self) -> bytes:
        return user_handle_for(self.id)

    def webauthn_display_name(self) -> str:
        return self.display_name

    def webauthn_credentials(self) -> List[CredentialRecord]:
        return list(self.credentials)


class SessionRecordModel(BaseModel):
    """Wire form of a ceremony session as kept by the session store."""

    challenge: str
    kind: CeremonyKind
    bound_account_id: Optional[str] = None
    excluded_credential_ids: List[str] = Field(default_factory=list)
    user_verification: str = "preferred"
    expires_at: datetime

    def encode(self) -> str:
        return self.model_dump_json()

    @classmethod
    def decode(cls, data: str | bytes) -> "SessionRecordModel":
        return cls.model_validate_json(data)


@dataclass
class CeremonySession:
    token: str
    challenge: bytes
    kind: CeremonyKind
    expires_at: datetime
    bound_account_id: Optional[str] = None
    excluded_credential_ids: List[bytes] = field(default_factory=list)
    user_verification: str = "preferred"

    def to_model(self) -> SessionRecordModel:
        return SessionRecordModel(
            challenge=b64url_encode(self.challenge),
            kind=self.kind,
            bound_account_id=self.bound_account_id,
            excluded_credential_ids=[b64url_encode(c) for c in self.excluded_credential_ids],
            user_verification=self.user_verification,
            expires_at=self.expires_at,
        )

    @classmethod
    def from_model(cls, token: str, model: SessionRecordModel) -> "CeremonySession":
        return cls(
            token=token,
            challenge=b64url_decode(model.challenge),
            kind=model.kind,
            expires_at=model.expires_at,
            bound_account_id=model.bound_account_id,
            excluded_credential_ids=[b64url_decode(c) for c in model.excluded_credential_ids],
            user_verification=model.user_verification,
        )
