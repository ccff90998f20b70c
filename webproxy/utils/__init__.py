import hashlib
from typing import Optional


def mask_token(text: str, token: Optional[str]) -> str:
    return text.replace(token, f"{token[:4]}****") if token else text


def sid_fingerprint(sid: Optional[str]) -> str:
    """Stable, low-leak session identifier for span attributes."""
    if not sid:
        return "<none>"
    return hashlib.sha256(sid.encode("utf-8")).hexdigest()[:12]
