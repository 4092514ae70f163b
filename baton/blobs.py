"""
Blob policy - decide whether a value is stored inline or out-of-line.

Only scalar-like values (text and bytes) are candidates. Structured
values are always kept inline in the token, whatever their size. Raw
bytes have no JSON form, so they are always stored out-of-line.
"""

from typing import Any, Optional

BLOB_MARKER = "$blob"
TEXT_ENCODING = "utf-8"


def is_scalar(value: Any) -> bool:
    """True for values that may be moved out-of-line (text and bytes)."""
    return isinstance(value, (str, bytes, bytearray))


def encoded_size(value: Any) -> int:
    """Serialized byte length of a scalar value."""
    if isinstance(value, str):
        return len(value.encode(TEXT_ENCODING))
    return len(value)


def should_blob(value: Any, threshold: int) -> bool:
    """
    Decide whether a value goes to blob storage.

    Args:
        value: Value being stored
        threshold: auto_blob_threshold in bytes; 0 disables automatic blobbing of text

    Returns:
        True for bytes, or for text whose encoded size exceeds threshold
    """
    if isinstance(value, (bytes, bytearray)):
        return True
    if threshold <= 0 or not is_scalar(value):
        return False
    return encoded_size(value) > threshold


def encode(value: Any) -> tuple[bytes, Optional[str]]:
    """
    Convert a scalar value to blob bytes.

    Returns:
        (payload, encoding) where encoding is None for raw bytes
    """
    if isinstance(value, str):
        return value.encode(TEXT_ENCODING), TEXT_ENCODING
    if isinstance(value, (bytes, bytearray)):
        return bytes(value), None
    raise TypeError(f"Only text or bytes can be stored as a blob, got {type(value).__name__}")


def decode(payload: bytes, encoding: Optional[str]) -> Any:
    """Inverse of encode()."""
    if encoding:
        return payload.decode(encoding)
    return payload


def make_ref(key: str, size: int, encoding: Optional[str]) -> dict[str, Any]:
    """Placeholder kept in token.data for an out-of-line value."""
    return {BLOB_MARKER: key, "size": size, "encoding": encoding}


def is_ref(value: Any) -> bool:
    return isinstance(value, dict) and BLOB_MARKER in value
