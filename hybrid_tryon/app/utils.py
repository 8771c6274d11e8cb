import base64
import hashlib
from typing import Iterable


def stable_content_hash(parts: Iterable[bytes], prefix: str = "") -> str:
    """Return a stable SHA256 hex digest for the provided byte chunks."""
    hasher = hashlib.sha256()
    if prefix:
        hasher.update(prefix.encode("utf-8"))
    for chunk in parts:
        hasher.update(chunk)
    return hasher.hexdigest()


def seed_from_content(parts: Iterable[bytes], prefix: str = "") -> int:
    return int(stable_content_hash(parts, prefix=prefix)[:16], 16)


def to_data_uri(data: bytes, media_type: str) -> str:
    return f"data:{media_type};base64,{base64.b64encode(data).decode('ascii')}"
