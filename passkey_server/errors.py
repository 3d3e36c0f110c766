"""Ceremony failure taxonomy.

Every error carries the HTTP status and the message the transport may show to
the client. Security relevant failures share one public message so a caller
cannot tell which check rejected it; the detailed reason is the exception text
and only ever goes to the server log.
"""

from __future__ import annotations

AUTHENTICATION_FAILED = "Authentication failed"


class CeremonyError(RuntimeError):
    status_code = 400
    public_message = "Bad request"


class ProtocolError(CeremonyError):
    """The client payload is malformed."""


class SessionNotFound(CeremonyError):
    """The ceremony token is unknown, expired or already consumed."""

    public_message = "Session expired, please retry"


class ChallengeMismatch(CeremonyError):
    status_code = 401
    public_message = AUTHENTICATION_FAILED


class VerificationFailed(CeremonyError):
    status_code = 401
    public_message = AUTHENTICATION_FAILED


class CredentialExcluded(VerificationFailed):
    """The authenticator is already registered to the account."""


class PossibleCloneDetected(CeremonyError):
    status_code = 401
    public_message = AUTHENTICATION_FAILED


class CredentialNotFound(CeremonyError):
    status_code = 401
    public_message = AUTHENTICATION_FAILED


class AccountNotFound(CeremonyError):
    status_code = 401
    public_message = AUTHENTICATION_FAILED


class DuplicateCredential(CeremonyError):
    """A credential id is already bound to some account."""

    status_code = 409
    public_message = "Credential already registered"


class AccountExists(CeremonyError):
    status_code = 409
    public_message = "Account already exists"
