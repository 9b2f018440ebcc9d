import base64
import binascii
import json
from dataclasses import dataclass

from limitwatch.errors import ParseError

UNKNOWN_EMAIL = "unknown@example.com"


@dataclass(frozen=True, slots=True)
class AccountInfo:
    email: "str"
    # organizational (hosted) domain, e.g. a Workspace account
    hosted_domain: "str | None" = None


def decode_jwt_claims(token: "str") -> "dict":
    """
    decodes the claims segment of a JWT without verifying it.
    The segment is base64url with its padding stripped, so the
    padding is restored to a multiple of 4 before decoding.
    """
    parts = token.split(".")
    if len(parts) != 3:
        raise ParseError("Invalid JWT format")

    payload = parts[1]
    padded = payload + "=" * (-len(payload) % 4)

    try:
        decoded = base64.urlsafe_b64decode(padded.encode("ascii"))
    except (binascii.Error, UnicodeEncodeError) as e:
        raise ParseError(f"JWT decode error: {e}") from e

    try:
        claims = json.loads(decoded)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ParseError(f"JWT parse error: {e}") from e

    if not isinstance(claims, dict):
        raise ParseError("JWT parse error: claims are not an object")
    return claims


def extract_account_info(id_token: "str") -> "AccountInfo":
    claims = decode_jwt_claims(id_token)
    email = claims.get("email")
    hosted_domain = claims.get("hd")
    return AccountInfo(
        email=email if isinstance(email, str) and email else UNKNOWN_EMAIL,
        hosted_domain=hosted_domain if isinstance(hosted_domain, str) else None,
    )
