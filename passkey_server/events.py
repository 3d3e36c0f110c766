"""Structured ceremony event logging."""

from __future__ import annotations

import json
import logging
import secrets

from .entities import b64url_encode

STAGE_LABELS = {
    "register": "Register",
    "authn": "Authenticate",
    "credentials": "Credentials",
}

EVENT_LABELS = {
    ("register", "options.start"): "Creating Register Options",
    ("register", "user.ensure"): "Ensuring account record",
    ("register", "options.success"): "Issued Register Options",
    ("register", "verify.start"): "Verifying Registration",
    ("register", "verify.expired"): "Registration Session Expired",
    ("register", "verify.rejected"): "Registration Rejected",
    ("register", "verify.duplicate"): "Credential Already Registered",
    ("register", "verify.success"): "Registration Completed",
    ("authn", "options.start"): "Creating Authentication Options",
    ("authn", "options.unknown_user"): "Unknown Login Hint",
    ("authn", "options.success"): "Issued Authentication Options",
    ("authn", "verify.start"): "Verifying Authentication",
    ("authn", "verify.expired"): "Authentication Session Expired",
    ("authn", "verify.rejected"): "Authentication Rejected",
    ("authn", "verify.clone"): "Possible Cloned Authenticator",
    ("authn", "verify.success"): "Authentication Completed",
    ("credentials", "list"): "Listing Credentials",
    ("credentials", "delete"): "Deleting Credential",
}


def new_request_id() -> str:
    return secrets.token_hex(4)


def _truncate(value: str, limit: int = 64) -> str:
    if len(value) <= limit:
        return value
    half = limit // 2
    return f"{value[:half]}…{value[-half:]}"


def _build_payload(req: str, **fields: object) -> dict[str, object]:
    payload: dict[str, object] = {"request_id": req}
    for key, value in fields.items():
        if value is None:
            continue
        if isinstance(value, (bytes, bytearray)):
            value = b64url_encode(bytes(value))
        if isinstance(value, str):
            payload[key] = _truncate(value)
        else:
            payload[key] = value
    return payload


def log_event(
    logger: logging.Logger,
    source: str,
    stage: str,
    event: str,
    req: str,
    level: int = logging.INFO,
    **fields: object,
) -> None:
    stage_label = STAGE_LABELS.get(stage, stage.title())
    event_label = EVENT_LABELS.get((stage, event), event)
    payload = json.dumps(_build_payload(req, **fields), indent=2, sort_keys=True, default=str)
    logger.log(level, f"[{source}: {stage_label}]: {event_label}\n{payload}")
