"""
Answer normalization.

Maps a raw candidate to the key it is tallied under. Normalization is
textual only (whitespace and case); numbers, punctuation and wording are
left alone so that different answers never merge into one bucket.
"""

import hashlib


def normalize(raw_text: str) -> str:
    """Trim, collapse internal whitespace runs to one space and case-fold."""
    return " ".join(raw_text.split()).casefold()


def key_digest(normalized_key: str) -> str:
    """Short stable digest of a normalized key, for traces and logs."""
    return hashlib.sha256(normalized_key.encode("utf-8")).hexdigest()[:16]
