"""Extract IPFS content identifiers from free-form text."""

import re
from typing import Any

MIN_CID_LENGTH = 46
MAX_CID_LENGTH = 120

# CIDv0: base58btc multihash, always "Qm" + 44 characters
CID_V0_PATTERN = re.compile(r"\bQm[1-9A-HJ-NP-Za-km-z]{44}\b")

# CIDv1 in base32 (multibase prefix "b")
CID_V1_PATTERN = re.compile(r"\b[bB][a-zA-Z2-7]{58,}\b")

IPFS_URL_PATTERN = re.compile(
    r"\b(?:ipfs://|https?://(?:[^/\s]+\.)?(?:dweb\.link|ipfs\.io)/ipfs/)"
    r"([A-Za-z0-9]+[A-Za-z0-9._-]*)",
    re.IGNORECASE,
)

_SEGMENT_END = re.compile(r"[/?#]")
_NON_ALNUM = re.compile(r"[^A-Za-z0-9]")


def clean_cid(raw: str | None) -> str | None:
    """Canonicalise a raw match into a CID, or None if it looks like noise.

    Keeps the first path segment, strips anything that is not alphanumeric
    and rejects results outside the plausible CID length window.
    """
    if not raw:
        return None
    first_segment = _SEGMENT_END.split(raw, maxsplit=1)[0]
    trimmed = _NON_ALNUM.sub("", first_segment)
    if len(trimmed) < MIN_CID_LENGTH or len(trimmed) > MAX_CID_LENGTH:
        return None
    return trimmed


def extract_cids(text: Any) -> list[str]:
    """Return the distinct CIDs referenced in ``text`` in first-seen order.

    Recognises ``ipfs://`` URIs, dweb.link / ipfs.io gateway URLs and bare
    CIDv0 / base32 CIDv1 strings. Malformed input yields an empty list.
    """
    if not isinstance(text, str) or not text:
        return []

    found: dict[str, None] = {}

    for match in IPFS_URL_PATTERN.finditer(text):
        cid = clean_cid(match.group(1))
        if cid:
            found.setdefault(cid, None)

    for pattern in (CID_V0_PATTERN, CID_V1_PATTERN):
        for match in pattern.finditer(text):
            cid = clean_cid(match.group(0))
            if cid:
                found.setdefault(cid, None)

    return list(found)
