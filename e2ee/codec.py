"""Base64 text encoding for keys and ciphertexts."""

import base64
import binascii

from .errors import DecodeError


def bytes_to_text(data: bytes) -> str:
    """Encode bytes as standard base64 text"""
    return base64.b64encode(data).decode("ascii")


def text_to_bytes(text: str) -> bytes:
    """
    Decode standard base64 text.

    Raises:
        DecodeError: If the text contains characters outside the base64
            alphabet or is badly padded
    """
    try:
        return base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError, TypeError) as e:
        raise DecodeError(f"Invalid base64 input: {e}") from e
