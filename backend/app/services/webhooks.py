from __future__ import annotations

import base64
import binascii
import hmac
from typing import Optional

from starlette.datastructures import Headers


class CredentialVerificationError(Exception):
    pass


def _basic_credentials(headers: Headers) -> Optional[tuple[str, str]]:
    value = headers.get("authorization")
    if not value:
        return None
    scheme, _, encoded = value.strip().partition(" ")
    if scheme.lower() != "basic" or not encoded.strip():
        return None
    try:
        decoded = base64.b64decode(encoded.strip(), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return None
    user, separator, password = decoded.partition(":")
    if not separator:
        return None
    return user, password


def verify_basic_credentials(headers: Headers, user: str, password: str) -> None:
    if not user or not password:
        raise CredentialVerificationError("integration credentials are not configured")
    provided = _basic_credentials(headers)
    if provided is None:
        raise CredentialVerificationError("missing basic credentials")
    user_ok = hmac.compare_digest(provided[0].encode("utf-8"), user.encode("utf-8"))
    password_ok = hmac.compare_digest(provided[1].encode("utf-8"), password.encode("utf-8"))
    if not (user_ok and password_ok):
        raise CredentialVerificationError("invalid basic credentials")
