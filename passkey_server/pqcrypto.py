"""ML-DSA signature verification built on top of liboqs-python."""

from __future__ import annotations

import logging
from typing import Dict

import oqs

LOGGER = logging.getLogger(__name__)

COSE_ALG_TO_OQS: Dict[int, str] = {
    -48: "ML-DSA-44",
    -49: "ML-DSA-65",
    -50: "ML-DSA-87",
}


def verify(algorithm: int, public_key: bytes, payload: bytes, signature: bytes) -> bool:
    if algorithm not in COSE_ALG_TO_OQS:
        raise ValueError(f"Unsupported COSE algorithm: {algorithm}")
    oqs_name = COSE_ALG_TO_OQS[algorithm]
    with oqs.Signature(oqs_name) as verifier:
        valid = bool(verifier.verify(payload, signature, public_key))
    LOGGER.debug("%s signature %s", oqs_name, "valid" if valid else "invalid")
    return valid
