"""PKCE (RFC 7636) and state generation."""

import base64
import hashlib
import secrets

from pydantic import BaseModel


class PKCEChallenge(BaseModel):
    verifier: str
    challenge: str
    method: str = "S256"


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def generate_code_verifier() -> str:
    """32 random bytes, base64url encoded without padding."""
    return _b64url(secrets.token_bytes(32))


def code_challenge(verifier: str) -> str:
    """S256 challenge: base64url(SHA-256(verifier))."""
    return _b64url(hashlib.sha256(verifier.encode("ascii")).digest())


def generate_pkce() -> PKCEChallenge:
    verifier = generate_code_verifier()
    return PKCEChallenge(verifier=verifier, challenge=code_challenge(verifier))


def generate_state() -> str:
    return _b64url(secrets.token_bytes(32))
