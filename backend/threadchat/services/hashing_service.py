import base64
import hashlib
from urllib.parse import unquote_to_bytes


def compute_content_hash(content: bytes) -> str:
    return hashlib.sha256(content).hexdigest()


def to_data_url(content: bytes, mime_type: str) -> str:
    return f"data:{mime_type};base64,{base64.b64encode(content).decode('ascii')}"


def decode_payload(payload: str) -> bytes:
    """Bytes of a `data:` URL or a bare base64 string."""
    if payload.startswith("data:"):
        header, _, encoded = payload.partition(",")
        if ";base64" not in header:
            return unquote_to_bytes(encoded)
        payload = encoded
    return base64.b64decode(payload, validate=False)
