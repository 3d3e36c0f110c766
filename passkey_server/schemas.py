"""Pydantic schemas for ceremony options and request/response payloads."""

from __future__ import annotations

from typing import List, Literal, Optional

from pydantic import BaseModel, Field

Requirement = Literal["required", "preferred", "discouraged"]


class RelyingPartyEntity(BaseModel):
    id: str
    name: str


class UserEntity(BaseModel):
    id: str = Field(min_length=1)
    name: str
    displayName: str


class PubKeyCredParam(BaseModel):
    type: Literal["public-key"] = "public-key"
    alg: int


class AuthenticatorSelectionCriteria(BaseModel):
    residentKey: Requirement = "required"
    requireResidentKey: bool = True
    userVerification: Requirement = "preferred"


class PublicKeyCredentialDescriptor(BaseModel):
    id: str
    type: Literal["public-key"] = "public-key"
    transports: List[str] = Field(default_factory=list)


class PublicKeyCredentialCreationOptions(BaseModel):
    challenge: str
    rp: RelyingPartyEntity
    user: UserEntity
    pubKeyCredParams: List[PubKeyCredParam]
    timeout: int = 90_000
    attestation: Literal["none"] = "none"
    authenticatorSelection: AuthenticatorSelectionCriteria = Field(
        default_factory=AuthenticatorSelectionCriteria
    )
    excludeCredentials: List[PublicKeyCredentialDescriptor] = Field(default_factory=list)


class PublicKeyCredentialRequestOptions(BaseModel):
    challenge: str
    rpId: str
    timeout: int = 90_000
    userVerification: Requirement = "preferred"
    allowCredentials: List[PublicKeyCredentialDescriptor] = Field(default_factory=list)


class AttestationResponse(BaseModel):
    clientDataJSON: str
    attestationObject: str
    transports: List[str] = Field(default_factory=list)


class RegistrationCredential(BaseModel):
    id: str
    rawId: str
    type: Literal["public-key"] = "public-key"
    response: AttestationResponse


class AssertionResponse(BaseModel):
    clientDataJSON: str
    authenticatorData: str
    signature: str
    userHandle: Optional[str] = None


class AuthenticationCredential(BaseModel):
    id: str
    rawId: str
    type: Literal["public-key"] = "public-key"
    response: AssertionResponse


class RegisterOptionsRequest(BaseModel):
    username: str = Field(min_length=1, max_length=128)
    display_name: Optional[str] = Field(default=None, max_length=128)


class AuthenticateOptionsRequest(BaseModel):
    username: Optional[str] = Field(default=None, max_length=128)


class CredentialSummary(BaseModel):
    credential_id: str
    algorithm: int
    sign_count: int
    transports: List[str]
    aaguid: Optional[str] = None
    attestation_format: str
    created_at: str
    updated_at: str


class RPResponse(BaseModel):
    success: bool = True
    message: Optional[str] = None
    data: Optional[dict] = None
