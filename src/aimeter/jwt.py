"""Decode the claim segment of compact JWTs.

Signatures are never verified: the claims are only used to recover OAuth
parameters (client id, scopes, expiry) that the credential files omit.
"""

from __future__ import annotations

import base64
import binascii
import json
from typing import Any

from aimeter.errors import JWTDecodeError


def _b64url_decode(segment: str) -> bytes:
    try:
        return base64.urlsafe_b64decode(segment.encode("ascii"))
    except (binascii.Error, ValueError, UnicodeEncodeError):
        padding = "=" * (-len(segment) % 4)
        try:
            return base64.urlsafe_b64decode((segment + padding).encode("ascii"))
        except (binascii.Error, ValueError, UnicodeEncodeError) as exc:
            raise JWTDecodeError(f"invalid base64url payload: {exc}") from exc


def decode_jwt_claims(token: str) -> dict[str, Any]:
    parts = token.split(".")
    if len(parts) < 2:
        raise JWTDecodeError("invalid token")
    decoded = _b64url_decode(parts[1])
    try:
        claims = json.loads(decoded)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise JWTDecodeError(f"invalid claims JSON: {exc}") from exc
    if not isinstance(claims, dict):
        raise JWTDecodeError("claims are not a JSON object")
    return claims


def extract_client_id(claims: dict[str, Any]) -> str:
    """Return ``client_id``, falling back to ``aud``.

    ``aud`` on access tokens is often the API audience URL rather than the
    OAuth client id; use :func:`extract_explicit_client_id` for those.
    """
    value = claims.get("client_id")
    if isinstance(value, str) and value:
        return value
    aud = claims.get("aud")
    if isinstance(aud, str):
        return aud
    if isinstance(aud, list):
        for item in aud:
            if isinstance(item, str) and item:
                return item
    return ""


def extract_explicit_client_id(token: str) -> str:
    try:
        claims = decode_jwt_claims(token)
    except JWTDecodeError:
        return ""
    value = claims.get("client_id")
    return value if isinstance(value, str) else ""


def normalize_scopes(value: Any) -> list[str]:
    if isinstance(value, str):
        return value.split()
    if isinstance(value, list):
        return [item for item in value if isinstance(item, str) and item]
    return []


def extract_scopes(claims: dict[str, Any]) -> list[str]:
    if "scp" in claims:
        return normalize_scopes(claims["scp"])
    if "scope" in claims:
        return normalize_scopes(claims["scope"])
    return []


def client_id_and_scopes(token: str) -> tuple[str, list[str]]:
    if not token:
        return "", []
    try:
        claims = decode_jwt_claims(token)
    except JWTDecodeError:
        return "", []
    return extract_client_id(claims), extract_scopes(claims)


def claim(token: str, name: str) -> Any:
    if not token:
        return None
    try:
        return decode_jwt_claims(token).get(name)
    except JWTDecodeError:
        return None
