"""Timing-safe signature comparison.

Both tokens are decoded to raw bytes first so that equivalent encodings
(upper vs lower case hex) compare equal, then compared with
hmac.compare_digest which does not exit early on the first differing byte.

Example:
    if timing_safe_compare(provided, expected, SignatureEncoding.HEX):
        accept()
"""

from __future__ import annotations

import base64
import binascii
import hmac
from enum import Enum


class SignatureEncoding(str, Enum):
    """Text encodings used for signature tokens on the wire."""

    HEX = "hex"
    BASE64 = "base64"


def decode_token(token: str, encoding: SignatureEncoding | str) -> bytes:
    """Decode a signature token to raw bytes.

    Raises:
        ValueError: If the token is not valid for the encoding.
    """
    encoding = SignatureEncoding(encoding)
    if encoding is SignatureEncoding.HEX:
        return bytes.fromhex(token)
    try:
        return base64.b64decode(token, validate=True)
    except binascii.Error as e:
        raise ValueError(f"Invalid base64 token: {e}") from e


def timing_safe_compare(
    provided: str,
    expected: str,
    encoding: SignatureEncoding | str,
) -> bool:
    """Compare two encoded signature tokens in constant time.

    Malformed input or a length mismatch returns False immediately. Length
    is a property of the algorithm, not of the secret, so the short circuit
    leaks nothing about the byte content.

    Args:
        provided: Token sent by the caller.
        expected: Token computed locally.
        encoding: Encoding shared by both tokens.

    Returns:
        True if both tokens decode to identical bytes.
    """
    try:
        provided_bytes = decode_token(provided, encoding)
        expected_bytes = decode_token(expected, encoding)
    except (ValueError, TypeError):
        return False

    if len(provided_bytes) != len(expected_bytes):
        return False

    return hmac.compare_digest(provided_bytes, expected_bytes)
