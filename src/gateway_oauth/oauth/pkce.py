"""PKCE (Proof Key for Code Exchange) implementation.

Implements RFC 7636 for secure OAuth 2.0 Authorization Code flows, plus
the opaque ``state`` token used for CSRF binding of the callback.
"""

from __future__ import annotations

import base64
import hashlib
import re
import secrets
from dataclasses import dataclass

from gateway_oauth.security import generate_secure_token

CODE_CHALLENGE_METHOD = "S256"

# RFC 7636 section 4.1 length bounds
MIN_VERIFIER_LENGTH = 43
MAX_VERIFIER_LENGTH = 128

_VERIFIER_PATTERN = re.compile(r"[A-Za-z0-9._~-]+")


@dataclass(frozen=True)
class PKCEPair:
    """PKCE code verifier and challenge pair.

    Attributes:
        code_verifier: Random string sent with token request
        code_challenge: SHA256 hash of verifier sent with auth request
        method: Challenge method advertised in the authorization request
    """

    code_verifier: str
    code_challenge: str
    method: str = CODE_CHALLENGE_METHOD


def generate_state(nbytes: int = 32) -> str:
    """Generate an opaque, unguessable state parameter.

    The value only binds the authorization request to its callback;
    it carries no payload.

    Args:
        nbytes: Number of random bytes

    Returns:
        URL-safe random token
    """
    return generate_secure_token(nbytes)


def generate_code_verifier(nbytes: int = 32) -> str:
    """Generate a cryptographically random code verifier.

    Creates a code verifier string of 43-128 characters using
    URL-safe characters as specified in RFC 7636.

    Args:
        nbytes: Number of random bytes (minimum 32 for sufficient entropy)

    Returns:
        URL-safe code verifier string

    Raises:
        ValueError: If nbytes < 32 or the result would exceed 128 characters
    """
    if nbytes < 32:
        msg = "nbytes must be at least 32 for sufficient entropy"
        raise ValueError(msg)
    if nbytes > 96:
        msg = "nbytes must be at most 96 to stay within 128 characters"
        raise ValueError(msg)

    return secrets.token_urlsafe(nbytes)


def validate_code_verifier(verifier: str) -> str:
    """Check a verifier against RFC 7636 section 4.1.

    Raises:
        ValueError: If the length or character set is wrong
    """
    if not MIN_VERIFIER_LENGTH <= len(verifier) <= MAX_VERIFIER_LENGTH:
        msg = (
            f"code verifier must be {MIN_VERIFIER_LENGTH}-{MAX_VERIFIER_LENGTH} "
            f"characters, got {len(verifier)}"
        )
        raise ValueError(msg)
    if not _VERIFIER_PATTERN.fullmatch(verifier):
        msg = "code verifier contains characters outside the unreserved set"
        raise ValueError(msg)
    return verifier


def generate_code_challenge(verifier: str) -> str:
    """Generate a code challenge from a code verifier.

    Computes the S256 code challenge as specified in RFC 7636:
    BASE64URL(SHA256(code_verifier))

    Args:
        verifier: The code verifier string

    Returns:
        Base64url-encoded SHA256 hash (without padding)

    Raises:
        ValueError: If the verifier is not a valid RFC 7636 verifier
    """
    validate_code_verifier(verifier)
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def create_pkce_pair(nbytes: int = 32) -> PKCEPair:
    """Create a new PKCE code verifier/challenge pair.

    Args:
        nbytes: Number of random bytes for verifier

    Returns:
        PKCEPair with verifier and challenge
    """
    verifier = generate_code_verifier(nbytes)
    challenge = generate_code_challenge(verifier)
    return PKCEPair(code_verifier=verifier, code_challenge=challenge)
