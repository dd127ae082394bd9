"""Transport encoding of signed tokens for links and 2D codes."""

from __future__ import annotations

import base64
import binascii
from urllib.parse import parse_qs, urlencode, urlsplit

from pydantic import ValidationError

from atlalli_api.services.redemption.tokens import SignedToken

REDEEM_LINK_PARAM = "d"


def encode_token(token: SignedToken) -> str:
    """Compact JSON wrapped in unpadded base64url, safe in a query string."""

    raw = token.model_dump_json(by_alias=True).encode("utf-8")
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def decode_token(text: str) -> SignedToken | None:
    """Reverse :func:`encode_token`; anything unparseable yields ``None``."""

    try:
        data = text.strip().encode("ascii")
        data += b"=" * (-len(data) % 4)
        raw = base64.b64decode(data, altchars=b"-_", validate=True)
        return SignedToken.model_validate_json(raw)
    except (binascii.Error, ValueError, ValidationError):
        return None


def build_redeem_link(base_url: str, locale: str, token: SignedToken) -> str:
    query = urlencode({REDEEM_LINK_PARAM: encode_token(token)})
    return f"{base_url.rstrip('/')}/{locale}/redeem?{query}"


def extract_scan_payload(text: str) -> SignedToken | None:
    """Parse what a scanner camera reads.

    Accepts a redeem link carrying the token in its ``d`` parameter, a bare
    encoded token, or a raw JSON token document.
    """

    candidate = text.strip()
    if not candidate:
        return None

    if candidate.startswith(("http://", "https://")):
        try:
            query = parse_qs(urlsplit(candidate).query)
        except ValueError:
            return None
        values = query.get(REDEEM_LINK_PARAM)
        if not values:
            return None
        return decode_token(values[0])

    if candidate.startswith("{"):
        try:
            return SignedToken.model_validate_json(candidate)
        except ValidationError:
            return None

    return decode_token(candidate)


__all__ = [
    "REDEEM_LINK_PARAM",
    "build_redeem_link",
    "decode_token",
    "encode_token",
    "extract_scan_payload",
]
