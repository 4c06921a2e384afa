import hashlib
import re
from typing import Optional, Sequence

from errors import InternalInvariantError

FINGERPRINT_PATTERN = re.compile(r"^[a-f0-9]{32}$")


def is_fingerprint(value: object) -> bool:
    return isinstance(value, str) and bool(FINGERPRINT_PATTERN.match(value))


def content_fingerprint(html_blocks: Sequence[str], css_text: Optional[str] = None) -> str:
    """MD5 of the blocks joined without a separator, followed by the CSS text."""
    combined = "".join(html_blocks)
    if css_text:
        combined += css_text
    digest = hashlib.md5(combined.encode("utf-8"), usedforsecurity=False).hexdigest()
    if not is_fingerprint(digest):
        raise InternalInvariantError(
            "Failed to generate valid content hash",
            {"generated_hash": digest, "hash_length": len(digest)},
        )
    return digest
