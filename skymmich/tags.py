"""
Tag filtering for tags pushed back to Immich.

Plate-solving machine tags include every star in the field, which is too
noisy for a photo library. Only catalog objects, named deep-sky objects and
user tags are kept.
"""

import re
from typing import Iterable, List

CATALOG_PATTERN = re.compile(
    r"^(M\s?\d|NGC\s?\d|IC\s?\d|Abell\s?\d|Sh2-|LDN\s?\d|LBN\s?\d|Barnard|Cr\s?\d|Mel\s?\d"
    r"|PGC\s?\d|UGC\s?\d|Ced\s?\d|vdB\s?\d)",
    re.IGNORECASE,
)
STAR_PATTERN = re.compile(r"^The star\b", re.IGNORECASE)

# "25 Tau)" left over from a badly split name
_FRAGMENT_PATTERN = re.compile(r"^\d+\s+\w{2,4}\)$")
_OBJECT_WORDS = re.compile(r"nebula|cluster|galaxy|supernova|remnant", re.IGNORECASE)
_STAR_DESIGNATION = re.compile(r"\(\d+\s+\w{2,4}\)|\([α-ωη]\s+\w{2,4}")


def is_relevant_tag(tag: str) -> bool:
    if STAR_PATTERN.search(tag):
        return False
    if _FRAGMENT_PATTERN.search(tag):
        return False
    if CATALOG_PATTERN.search(tag):
        return True
    if tag == "astrophotography":
        return True
    if _OBJECT_WORDS.search(tag):
        return True
    if _STAR_DESIGNATION.search(tag):
        return False
    return True


def filter_relevant_tags(tags: Iterable[str]) -> List[str]:
    """Keep catalog objects, named objects and user tags; drop star names."""
    return [tag for tag in tags if is_relevant_tag(tag)]


def merge_tags(*groups: Iterable[str]) -> List[str]:
    """Concatenate tag lists, dropping blanks and duplicates while keeping order."""
    merged: List[str] = []
    seen = set()
    for group in groups:
        for tag in group or []:
            if tag and tag not in seen:
                seen.add(tag)
                merged.append(tag)
    return merged
