"""Scanning of note HTML for embedded-file and attachment references.

Embedded files have been written into note content under several URL
schemes over time. Each scheme is a ``MatcherRule``: a pattern plus an
extractor that turns a match into a path relative to the ``files/`` root.
``extract_note_files`` applies every rule and unions the results.
"""
import re
from dataclasses import dataclass
from typing import Callable, List, Match, Optional, Pattern, Set
from urllib.parse import unquote

from notestore.utils import (is_safe_rel_path, normalize_rel_path,
                             strip_prefix_repeated)

FILES_PREFIX = "files/"
LEGACY_FILES_SCHEME = "notes-file://files/"


@dataclass(frozen=True)
class MatcherRule:
    """One historical way of referencing an embedded file from ``src``."""

    name: str
    patterns: List[Pattern]
    extract: Callable[[Match], Optional[str]]

    def scan(self, html: str) -> List[str]:
        """Paths found by this rule. Absolute paths and paths with ``..`` are dropped."""
        found = []
        for pattern in self.patterns:
            for match in pattern.finditer(html):
                rel = self.extract(match)
                if rel and is_safe_rel_path(rel):
                    found.append(rel)
        return found


def _src_patterns(body: str) -> List[Pattern]:
    """Compile ``body`` once per quote style.

    ``{q}`` stands for the quote and ``{nq}`` for "any character except
    the quote", so the path group stops at the closing quote.
    """
    return [
        re.compile("src=" + q + body.format(nq=f"[^{q}]") + q)
        for q in ('"', "'")
    ]


def _verbatim(match: Match) -> Optional[str]:
    return match.group("path")


def _percent_decoded(match: Match) -> Optional[str]:
    try:
        decoded = unquote(FILES_PREFIX + match.group("path"), errors="strict")
    except UnicodeDecodeError:
        return None
    return strip_prefix_repeated(decoded, FILES_PREFIX)


NOTES_FILE_SCHEME = MatcherRule(
    name="notes_file_scheme",
    patterns=_src_patterns(r"notes-file://files/(?:evernote/)?(?P<path>{nq}+)"),
    extract=_verbatim,
)
RELATIVE_FILES = MatcherRule(
    name="relative_files",
    patterns=_src_patterns(r"files/(?:evernote/)?(?P<path>{nq}+)"),
    extract=_verbatim,
)
ASSET_HOST = MatcherRule(
    name="asset_host",
    patterns=_src_patterns(r"{nq}*asset\.localhost{nq}*files/(?P<path>{nq}+)"),
    extract=_verbatim,
)
ASSET_HOST_ENCODED = MatcherRule(
    name="asset_host_encoded",
    patterns=_src_patterns(r"{nq}*asset\.localhost{nq}*(?i:files%2F)(?P<path>{nq}+)"),
    extract=_percent_decoded,
)

DEFAULT_RULES = [NOTES_FILE_SCHEME, RELATIVE_FILES, ASSET_HOST, ASSET_HOST_ENCODED]

_ATTACHMENT_ID_RE = re.compile(r"""data-attachment-id=(["'])(\d+)\1""")
_SRC_ATTR_RE = re.compile(r"""src=(["'])(.*?)\1""", re.DOTALL)


def extract_note_files(html: str, rules: Optional[List[MatcherRule]] = None) -> List[str]:
    """Collect the embedded files referenced by note content.

    Args:
        html: Note content.
        rules: Matcher rules to apply. Defaults to every known scheme.

    Returns:
        Sorted, de-duplicated paths relative to the ``files/`` root.
    """
    if not html:
        return []
    found: Set[str] = set()
    for rule in rules if rules is not None else DEFAULT_RULES:
        found.update(rule.scan(html))
    return sorted(found)


def extract_attachment_ids(html: str) -> Set[int]:
    """Collect the attachment ids marked with ``data-attachment-id``."""
    if not html:
        return set()
    return {int(m.group(2)) for m in _ATTACHMENT_ID_RE.finditer(html)}


def rel_path_from_url(url: str) -> Optional[str]:
    """Map a legacy embedded-file URL to its path under ``files/``.

    Returns None for URLs already in canonical ``files/...`` form and for
    URLs that do not point into the files root at all.
    """
    lower = url.lower()
    if lower.startswith(FILES_PREFIX) or lower.startswith("./" + FILES_PREFIX):
        return None
    if lower.startswith(LEGACY_FILES_SCHEME):
        return url[len(LEGACY_FILES_SCHEME):]
    decoded = normalize_rel_path(unquote(url))
    idx = decoded.lower().find("/files/")
    if idx >= 0:
        return decoded[idx + len("/files/"):].lstrip("/")
    idx = lower.find("%2ffiles%2f")
    if idx >= 0:
        return normalize_rel_path(unquote(url[idx + len("%2ffiles%2f"):]))
    return None


def normalize_file_urls(html: str) -> str:
    """Rewrite every legacy embedded-file ``src`` to ``files/<relpath>``.

    Other ``src`` values and the rest of the markup are left untouched.
    """
    if not html:
        return ""

    def _rewrite(match: Match) -> str:
        quote, url = match.group(1), match.group(2)
        rel = rel_path_from_url(url)
        if rel is None:
            return match.group(0)
        return f"src={quote}{FILES_PREFIX}{rel}{quote}"

    return _SRC_ATTR_RE.sub(_rewrite, html)
