"""
Fingerprint - Content hashing for change detection.

Hashes the exact text that gets embedded (context text when present). Two
items with identical embedded text always share a fingerprint, so an
unchanged item is skipped on the next run. Digests are SHA-256 hex strings.
"""

import hashlib
from typing import Dict, Iterable

from .models import Item


def fingerprint(text: str) -> str:
    """SHA-256 hex digest of the UTF-8 encoded text."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def fingerprint_item(item: Item) -> str:
    return fingerprint(item.embedded_text)


def fingerprint_items(items: Iterable[Item]) -> Dict[str, str]:
    """
    Fingerprint many items.

    Usage:
        hashes = fingerprint_items(items)
        changed = [i for i in items if known.get(i.id) != hashes[i.id]]
    """
    return {item.id: fingerprint_item(item) for item in items}
