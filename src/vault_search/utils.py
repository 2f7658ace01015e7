"""Utility functions for the vault search service."""

import posixpath
import re
import unicodedata
from typing import Any, Iterable, Optional

_WHITESPACE_RE = re.compile(r"\s+")


def to_posix(path: str) -> str:
    """Convert a path to forward-slash separators.

    Examples:
        "notes\\\\daily\\\\2024.md" -> "notes/daily/2024.md"
        "C:\\\\vault\\\\a.md" -> "C:/vault/a.md"
    """
    return path.replace("\\", "/")


def normalize_vault_path(path: str) -> str:
    """Normalize a path to the canonical vault-relative form.

    Separators become "/", duplicate and trailing slashes collapse,
    leading "/" and "./" are removed. The vault root is "".

    Examples:
        "/Projects//Plan.md" -> "Projects/Plan.md"
        ".\\\\Inbox\\\\idea.md" -> "Inbox/idea.md"
        "/" -> ""
        "a/../" -> ""
    """
    if not path:
        return ""
    result = posixpath.normpath(to_posix(path).strip())
    result = result.lstrip("/")
    if result == ".":
        return ""
    return result


def fold_path(path: str) -> str:
    """Fold a path for case- and diacritic-insensitive comparison.

    Applies vault normalization, then NFKD decomposition, drops combining
    marks, and casefolds.

    Examples:
        "dir/ÉCOLE.md" -> "dir/ecole.md"
        "Café\\\\Menu.MD" -> "cafe/menu.md"
    """
    decomposed = unicodedata.normalize("NFKD", normalize_vault_path(path))
    stripped = "".join(c for c in decomposed if not unicodedata.combining(c))
    return stripped.casefold()


def path_matches_suffix(candidate_folded: str, query_folded: str) -> bool:
    """Whether a folded stored path equals or ends with the folded query path.

    The suffix must start at a path-segment boundary, so "ecole.md" matches
    "dir/ecole.md" but not "dir/preecole.md".
    """
    if not query_folded:
        return False
    if candidate_folded == query_folded:
        return True
    return candidate_folded.endswith("/" + query_folded)


def clamp_limit(value: Any, default: int, maximum: int) -> int:
    """Clamp a requested result count into [1, maximum].

    Non-numeric values (including booleans and None) fall back to default.
    """
    if isinstance(value, bool) or value is None:
        return default
    try:
        limit = int(value)
    except (TypeError, ValueError):
        return default
    return max(1, min(maximum, limit))


def note_title(path: str) -> str:
    """Derive a display title from a note path (file name without extension)."""
    name = posixpath.basename(normalize_vault_path(path))
    stem, ext = posixpath.splitext(name)
    return stem if ext else name


def make_preview(text: Optional[str], max_length: int = 200) -> Optional[str]:
    """Collapse whitespace and truncate text for a result preview."""
    if not text:
        return None
    collapsed = _WHITESPACE_RE.sub(" ", text).strip()
    if not collapsed:
        return None
    if len(collapsed) > max_length:
        return collapsed[: max_length - 3].rstrip() + "..."
    return collapsed


def resolve_path(candidates: Iterable[str], path: str) -> Optional[str]:
    """Resolve a requested path against known paths.

    An exact match after normalization wins. Otherwise the requested path
    is compared case- and diacritic-insensitively as a segment suffix, and
    must match exactly one distinct candidate.

    Returns:
        The matching candidate as given, or None when nothing (or more than
        one path) matches.
    """
    wanted = normalize_vault_path(path)
    if not wanted:
        return None
    pool = list(candidates)
    for candidate in pool:
        if normalize_vault_path(candidate) == wanted:
            return candidate

    wanted_folded = fold_path(wanted)
    matches = {}
    for candidate in pool:
        if path_matches_suffix(fold_path(candidate), wanted_folded):
            matches.setdefault(normalize_vault_path(candidate), candidate)
    if len(matches) == 1:
        return next(iter(matches.values()))
    return None
