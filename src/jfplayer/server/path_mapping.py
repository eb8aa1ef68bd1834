"""Path mapping engine.

Rewrites a file path as reported by the media server into a path the local
player can open. Rules are tried in order and the first one that matches
wins:

    prefix    /mnt/movies        -> \\\\nas\\Movies
    wildcard  nfs://*/media/**   -> \\\\nas\\{1}
    regex     ^/data/(\\w+)/      -> \\\\nas\\$1\\

Whatever comes out (or the untouched path when nothing matched) has its
forward slashes converted to backslashes.
"""

from __future__ import annotations

import logging
import re
from typing import TYPE_CHECKING, Iterable

if TYPE_CHECKING:
    from jfplayer.config import PathMapping

logger = logging.getLogger(__name__)

_WILDCARD_PLACEHOLDER_RE = re.compile(r"\{(\d+)\}")
_TEMPLATE_NAME_RE = re.compile(r"[A-Za-z0-9_]+")


def wildcard_to_regex(pattern: str) -> re.Pattern:
    """Compile a wildcard pattern into an anchored regex.

    ``*`` matches within one path segment, ``**`` matches lazily across
    segments. The last group captures whatever follows the pattern.
    """
    parts = ["^"]
    i = 0
    literal = []
    while i < len(pattern):
        if pattern.startswith("**", i):
            parts.append(re.escape("".join(literal)))
            literal = []
            parts.append("(.*?)")
            i += 2
        elif pattern[i] == "*":
            parts.append(re.escape("".join(literal)))
            literal = []
            parts.append("([^/]*)")
            i += 1
        else:
            literal.append(pattern[i])
            i += 1
    parts.append(re.escape("".join(literal)))
    parts.append("(.*)$")
    return re.compile("".join(parts), re.DOTALL)


def expand_template(match: re.Match, template: str) -> str:
    """Expand ``$1``, ``${1}``, ``${name}`` and ``$$`` in a replacement.

    A ``$name`` reference takes the longest run of letters, digits and
    underscores. References to groups that don't exist or didn't take part
    in the match expand to nothing. Backslashes are literal.
    """
    out = []
    i = 0
    while i < len(template):
        ch = template[i]
        if ch != "$" or i + 1 >= len(template):
            out.append(ch)
            i += 1
            continue

        nxt = template[i + 1]
        if nxt == "$":
            out.append("$")
            i += 2
            continue

        if nxt == "{":
            end = template.find("}", i + 2)
            name = template[i + 2:end] if end != -1 else ""
            if end == -1 or not _TEMPLATE_NAME_RE.fullmatch(name):
                out.append(ch)
                i += 1
                continue
            i = end + 1
        else:
            m = _TEMPLATE_NAME_RE.match(template, i + 1)
            if not m:
                out.append(ch)
                i += 1
                continue
            name = m.group(0)
            i = m.end()

        out.append(_group_value(match, name))
    return "".join(out)


def _group_value(match: re.Match, name: str) -> str:
    try:
        key: int | str = int(name) if name.isdigit() else name
        return match.group(key) or ""
    except IndexError:
        # unknown group name or number
        return ""


def _apply_prefix(path: str, rule: "PathMapping") -> str | None:
    if path.startswith(rule.pattern):
        return rule.replacement + path[len(rule.pattern):]
    return None


def _apply_wildcard(path: str, rule: "PathMapping") -> str | None:
    regex = wildcard_to_regex(rule.pattern)
    m = regex.match(path)
    if m is None:
        return None

    groups = m.groups()
    remainder = groups[-1]
    captures = groups[:-1]

    def placeholder(pm: re.Match) -> str:
        n = int(pm.group(1))
        if 1 <= n <= len(captures):
            return captures[n - 1]
        return pm.group(0)

    result = _WILDCARD_PLACEHOLDER_RE.sub(placeholder, rule.replacement)
    if remainder and not result.endswith(("/", "\\")) and not remainder.startswith(("/", "\\")):
        result += "/"
    return result + remainder


def _apply_regex(path: str, rule: "PathMapping") -> str | None:
    regex = re.compile(rule.pattern)
    if regex.search(path) is None:
        return None
    return regex.sub(lambda m: expand_template(m, rule.replacement), path)


_APPLIERS = {
    "prefix": _apply_prefix,
    "wildcard": _apply_wildcard,
    "regex": _apply_regex,
}


def apply_mapping(path: str, rule: "PathMapping") -> str | None:
    """Apply one rule. Returns the rewritten path, or None if it didn't match.

    Unknown rule kinds behave like prefix rules. A pattern that fails to
    compile is logged and counts as no match.
    """
    applier = _APPLIERS.get(rule.kind, _apply_prefix)
    try:
        return applier(path, rule)
    except re.error as e:
        logger.warning("Invalid %s pattern %r: %s", rule.kind, rule.pattern, e)
        return None


def to_backslashes(path: str) -> str:
    return path.replace("/", "\\")


def translate(path: str, rules: Iterable["PathMapping"]) -> str:
    """Rewrite a server-side path using the first matching rule.

    Rules with an empty pattern are unfilled form rows and are skipped.
    """
    for rule in rules:
        if not rule.pattern:
            continue
        result = apply_mapping(path, rule)
        if result is not None:
            logger.debug("Mapping %s %r matched %s", rule.kind, rule.pattern, path)
            return to_backslashes(result)
    return to_backslashes(path)


def check_unc_path(path: str) -> bool:
    """Return False (and log) if a UNC path has a colon past the share name.

    SMB servers reject names containing ':'; these usually come from files
    named on a Linux share.
    """
    if not path.startswith("\\\\"):
        return True
    parts = path[2:].split("\\", 2)
    if len(parts) >= 3 and ":" in parts[2]:
        logger.warning("Colon in SMB path may cause issues: %s", path)
        return False
    return True
