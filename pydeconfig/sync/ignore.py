"""Gitignore-style path filtering for local trees.

Rules come from a fixed default set followed by the lines of a
``.deconfigignore`` file at the root of the local tree, in file order.

Matching rules:

- Blank lines and lines starting with ``#`` are skipped. ``\\#`` and
  ``\\!`` escape a literal leading ``#`` or ``!``.
- A leading ``!`` negates the rule: a match re-includes the path.
- A trailing ``/`` makes the rule match directories only.
- A rule containing a ``/`` anywhere but at the end is anchored to the
  root (a leading ``/`` is dropped). Other rules match the last path
  component at any depth.
- ``*`` and ``?`` and ``[...]`` never match ``/``. ``**`` does, when it
  forms a whole path segment.

Precedence: a path is ignored if any of its ancestor directories is
ignored, since the walker never descends into an ignored directory and a
file below it cannot be re-included. Otherwise every rule is tested in
order and the last matching rule decides.
"""

import logging
import posixpath
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional, Union

from ..exceptions import DeconfigValidationError

logger = logging.getLogger(__name__)

IGNORE_FILE_NAME = ".deconfigignore"

DEFAULT_IGNORE_PATTERNS = [
    # VCS
    ".git/",
    ".svn/",
    ".hg/",
    # OS metadata
    ".DS_Store",
    "Thumbs.db",
    "desktop.ini",
    # Temp and editor files
    "*.tmp",
    "*.temp",
    "*.swp",
    "*.swo",
    "*~",
    # Local env files
    ".env",
    ".env.local",
    ".env.*.local",
    # Dependencies
    "node_modules/",
    "__pycache__/",
    # The pattern file itself
    f"/{IGNORE_FILE_NAME}",
]


def _translate(pattern: str) -> str:
    """Translate a glob body into a regular expression fragment."""
    out: list[str] = []
    i = 0
    n = len(pattern)
    while i < n:
        c = pattern[i]
        at_segment_start = i == 0 or pattern[i - 1] == "/"
        if c == "*":
            if pattern.startswith("**/", i) and at_segment_start:
                out.append("(?:.*/)?")
                i += 3
            elif pattern.startswith("**", i) and at_segment_start and i + 2 == n:
                out.append(".*")
                i += 2
            else:
                while i < n and pattern[i] == "*":
                    i += 1
                out.append("[^/]*")
            continue
        if c == "?":
            out.append("[^/]")
        elif c == "[":
            j = i + 1
            if j < n and pattern[j] in "!^":
                j += 1
            if j < n and pattern[j] == "]":
                j += 1
            while j < n and pattern[j] != "]":
                j += 1
            if j >= n:
                raise DeconfigValidationError(
                    f"Unterminated character class in pattern: {pattern!r}"
                )
            body = pattern[i + 1 : j]
            if body[:1] in ("!", "^"):
                body = "^" + body[1:]
            out.append("[" + body.replace("\\", "\\\\") + "]")
            i = j
        elif c == "\\" and i + 1 < n:
            i += 1
            out.append(re.escape(pattern[i]))
        else:
            out.append(re.escape(c))
        i += 1
    return "".join(out)


@dataclass(frozen=True)
class IgnoreRule:
    """One compiled ignore pattern."""

    pattern: str
    negated: bool
    dir_only: bool
    anchored: bool
    regex: "re.Pattern[str]"
    source: str = "default"

    @classmethod
    def parse(cls, line: str, source: str = "default") -> Optional["IgnoreRule"]:
        """Compile a pattern line.

        Returns:
            The rule, or None for blank and comment lines

        Raises:
            DeconfigValidationError: If the pattern is malformed
        """
        text = line.strip()
        if not text or text.startswith("#"):
            return None

        negated = False
        if text.startswith("!"):
            negated = True
            text = text[1:]
        elif text.startswith("\\!") or text.startswith("\\#"):
            text = text[1:]

        dir_only = text.endswith("/")
        body = text.rstrip("/")
        anchored = "/" in body
        body = body.lstrip("/")
        if not body:
            raise DeconfigValidationError(f"Empty ignore pattern: {line!r}")

        fragment = _translate(body)
        if anchored:
            regex = re.compile(f"^{fragment}$")
        else:
            regex = re.compile(f"^(?:.*/)?{fragment}$")

        return cls(
            pattern=line.strip(),
            negated=negated,
            dir_only=dir_only,
            anchored=anchored,
            regex=regex,
            source=source,
        )

    def matches(self, relative_path: str, is_dir: bool = False) -> bool:
        if self.dir_only and not is_dir:
            return False
        return self.regex.match(relative_path) is not None


class IgnoreFilter:
    """Decides whether a path under a root is excluded from sync."""

    def __init__(self, root: Path, rules: Iterable[IgnoreRule] = ()):
        self.root = Path(root).resolve()
        self.rules: list[IgnoreRule] = list(rules)

    @classmethod
    def from_patterns(
        cls,
        root: Path,
        patterns: Iterable[str],
        include_defaults: bool = True,
        source: str = "inline",
    ) -> "IgnoreFilter":
        """Build a filter from explicit pattern lines."""
        rules: list[IgnoreRule] = []
        if include_defaults:
            rules.extend(_default_rules())
        for line in patterns:
            rule = IgnoreRule.parse(line, source=source)
            if rule is not None:
                rules.append(rule)
        return cls(root, rules)

    @classmethod
    def load(cls, root: Path) -> "IgnoreFilter":
        """Load the default rules plus ``.deconfigignore`` at ``root``."""
        root = Path(root)
        rules = _default_rules()

        ignore_file = root / IGNORE_FILE_NAME
        if ignore_file.is_file():
            try:
                text = ignore_file.read_text(encoding="utf-8", errors="replace")
            except OSError as e:
                logger.warning(f"Could not read {ignore_file}: {e}")
                text = ""
            for line in text.splitlines():
                rule = IgnoreRule.parse(line, source=str(ignore_file))
                if rule is not None:
                    rules.append(rule)

        ignore_filter = cls(root, rules)
        logger.debug(
            f"Loaded {ignore_filter.pattern_count()} ignore patterns for {root}"
        )
        return ignore_filter

    def pattern_count(self) -> int:
        return len(self.rules)

    def relativize(self, path: Union[str, Path]) -> Optional[str]:
        """Normalize ``path`` to a root-relative POSIX path.

        Absolute paths are taken relative to the root; relative paths are
        taken as already root-relative.

        Returns:
            The relative path, or None if it is the root or outside it
        """
        if Path(path).is_absolute():
            try:
                rel = Path(path).resolve().relative_to(self.root).as_posix()
            except ValueError:
                return None
        else:
            rel = str(path).replace("\\", "/")

        rel = posixpath.normpath(rel)
        if rel in (".", "") or rel == ".." or rel.startswith("../"):
            return None
        return rel

    def _last_match(self, relative_path: str, is_dir: bool) -> bool:
        ignored = False
        for rule in self.rules:
            if rule.matches(relative_path, is_dir):
                ignored = not rule.negated
        return ignored

    def is_ignored(self, path: Union[str, Path], is_dir: bool = False) -> bool:
        """Check whether ``path`` is excluded.

        Args:
            path: Root-relative path, or an absolute path under the root
            is_dir: Whether the path names a directory

        Returns:
            True if ignored. Paths outside the root are never ignored.
        """
        rel = self.relativize(path)
        if rel is None:
            return False

        parts = rel.split("/")
        for depth in range(1, len(parts)):
            if self._last_match("/".join(parts[:depth]), is_dir=True):
                return True
        return self._last_match(rel, is_dir)

    def is_remote_ignored(self, remote_path: str) -> bool:
        """Check a remote path (``/a/b.txt``) against the rules."""
        return self.is_ignored(remote_path.replace("\\", "/").lstrip("/"))


def _default_rules() -> list[IgnoreRule]:
    rules = []
    for pattern in DEFAULT_IGNORE_PATTERNS:
        rule = IgnoreRule.parse(pattern)
        if rule is not None:
            rules.append(rule)
    return rules


def load_ignore_filter(root: Path) -> IgnoreFilter:
    """Shortcut for :meth:`IgnoreFilter.load`."""
    return IgnoreFilter.load(root)
