"""PKCE (Proof Key for Code Exchange) pair generation per RFC 7636.

Streamlabs binds the authorization code issued for a TikTok login to the
challenge sent on the login URL, so a fresh pair is generated for every
acquisition attempt and the verifier never leaves this process except in
the in-browser token exchange.
"""

import base64
import hashlib
import secrets
from dataclasses import dataclass


# 64 random bytes, hex-encoded to 128 characters (the RFC 7636 maximum)
VERIFIER_BYTES = 64


@dataclass(frozen=True)
class PKCEPair:
    """PKCE code verifier and challenge pair.

    The verifier is sent with the token exchange request.
    The challenge is sent on the authorization URL.
    """

    verifier: str
    challenge: str
    method: str = "S256"


def generate_code_verifier() -> str:
    """Generate a cryptographically random code verifier.

    Returns:
        128-character lowercase hex string (64 random bytes)
    """
    return secrets.token_hex(VERIFIER_BYTES)


def generate_code_challenge(verifier: str) -> str:
    """Generate the S256 code challenge for a verifier.

    code_challenge = BASE64URL(SHA256(ASCII(code_verifier))), unpadded.

    Args:
        verifier: The code verifier string

    Returns:
        43-character base64url string
    """
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


def generate_pkce_pair() -> PKCEPair:
    """Generate a complete PKCE pair for one acquisition attempt."""
    verifier = generate_code_verifier()
    return PKCEPair(verifier=verifier, challenge=generate_code_challenge(verifier))
