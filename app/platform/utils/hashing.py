import hashlib
from typing import Iterable, Optional


def content_hash(value: str) -> str:
    """SHA-256 hex digest, used for content fingerprints and idempotency keys."""
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def build_idempotency_key(
    primary_url: str,
    document_urls: Iterable[str],
    content_fingerprint: Optional[str] = None,
) -> str:
    """
    Same page URL + document URLs (+ content fingerprint) -> same key.
    URL order does not matter.
    """
    urls = sorted({primary_url, *document_urls})
    material = "|".join(urls)
    if content_fingerprint:
        material = f"{material}|{content_fingerprint}"
    return content_hash(material)
