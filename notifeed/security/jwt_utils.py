# notifeed/security/jwt_utils.py
import time
from typing import Optional

import jwt

from notifeed.errors import CredentialError

# seconds of slack when judging expiry against the local clock
EXPIRY_LEEWAY = 5


def bearer_from_header(authorization_header: Optional[str]) -> str:
    """
    Takes the header: Authorization: Bearer <token>
    Returns the raw token.
    Raises CredentialError if missing or malformed.
    """
    if not authorization_header:
        raise CredentialError("Missing Authorization header")

    if not authorization_header.startswith("Bearer "):
        raise CredentialError("Invalid Authorization header format")

    token = authorization_header.removeprefix("Bearer ").strip()
    if not token:
        raise CredentialError("Empty bearer token")
    return token


def read_claims(token: str) -> dict:
    """
    Decodes the JWT payload WITHOUT verifying the signature.
    The backend verifies; here we only need `sub` and `exp`
    to know whose channel this is and whether the token is still usable.
    """
    try:
        return jwt.decode(
            token,
            options={"verify_signature": False, "verify_exp": False},
        )
    except jwt.PyJWTError as e:
        raise CredentialError(f"Invalid token: {e}")


def is_expired(claims: dict, now: Optional[float] = None) -> bool:
    exp = claims.get("exp")
    if exp is None:
        return False
    current = time.time() if now is None else now
    try:
        return float(exp) <= current - EXPIRY_LEEWAY
    except (TypeError, ValueError):
        return True


def inspect_token(token: str) -> dict:
    """
    Validates shape and expiry and returns the claims.
    Raises CredentialError if undecodable, expired or without subject.
    """
    claims = read_claims(token)
    if is_expired(claims):
        raise CredentialError("Token expired")
    if "sub" not in claims:
        raise CredentialError("Token without subject")
    return claims
