"""Overlap tests for resource identifiers and ownership globs.

Resources are file-path style identifiers that may contain fnmatch
wildcards.  Two identifiers overlap when some concrete path could be
matched by both.  Exact answers for arbitrary globs are expensive, so the
test is conservative: it only reports "disjoint" when the literal prefixes
or literal suffixes prove it.
"""

from __future__ import annotations

import fnmatch
import re

_WILDCARD = re.compile(r"[*?\[]")


def normalize(resource: str) -> str:
    normalized = resource.strip().replace("\\", "/")
    while normalized.startswith("./"):
        normalized = normalized[2:]
    return normalized


def has_wildcard(resource: str) -> bool:
    return bool(_WILDCARD.search(resource))


def _literal_prefix(pattern: str) -> str:
    match = _WILDCARD.search(pattern)
    return pattern if match is None else pattern[: match.start()]


def _literal_suffix(pattern: str) -> str:
    last = None
    for match in _WILDCARD.finditer(pattern):
        last = match
    if last is None:
        return pattern
    tail = pattern[last.end() :]
    if last.group() == "[":
        closing = tail.find("]")
        tail = tail[closing + 1 :] if closing >= 0 else ""
    return tail


def _fnmatch(path: str, pattern: str) -> bool:
    if fnmatch.fnmatchcase(path, pattern):
        return True
    # "**/" also matches zero directories.
    return "**/" in pattern and fnmatch.fnmatchcase(path, pattern.replace("**/", ""))


def _path_overlaps_pattern(path: str, pattern: str) -> bool:
    if _fnmatch(path, pattern) or _fnmatch(path + "/x", pattern):
        return True
    # A plain path may name a directory that contains the pattern's matches.
    return _literal_prefix(pattern).startswith(path.rstrip("/") + "/")


def matches(path: str, pattern: str) -> bool:
    return _fnmatch(normalize(path), normalize(pattern))


def overlaps(left: str, right: str) -> bool:
    a = normalize(left)
    b = normalize(right)
    if not a or not b:
        return False
    if a == b:
        return True

    a_wild = has_wildcard(a)
    b_wild = has_wildcard(b)
    if not a_wild and not b_wild:
        # Directories claim everything beneath them.
        return a.startswith(b.rstrip("/") + "/") or b.startswith(a.rstrip("/") + "/")
    if not a_wild:
        return _path_overlaps_pattern(a, b)
    if not b_wild:
        return _path_overlaps_pattern(b, a)

    prefix_a = _literal_prefix(a)
    prefix_b = _literal_prefix(b)
    if not (prefix_a.startswith(prefix_b) or prefix_b.startswith(prefix_a)):
        return False
    suffix_a = _literal_suffix(a)
    suffix_b = _literal_suffix(b)
    if suffix_a and suffix_b and not (suffix_a.endswith(suffix_b) or suffix_b.endswith(suffix_a)):
        return False
    return True


def any_overlap(left: list[str] | tuple[str, ...], right: list[str] | tuple[str, ...]) -> bool:
    return any(overlaps(a, b) for a in left for b in right)


def first_overlap(
    resource: str, candidates: list[str] | tuple[str, ...]
) -> str | None:
    for candidate in candidates:
        if overlaps(resource, candidate):
            return candidate
    return None
