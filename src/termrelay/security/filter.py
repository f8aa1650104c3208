"""Sensitive-data redaction for terminal output and submitted commands.

The filter runs once per output chunk; the single result feeds both live
delivery and durable storage, so the two paths can never disagree.
Output arrives in arbitrary slices, so the pipeline matches each slice
against the tail of what it already released (``filter_continuation``)
and holds back text that could still grow into a secret (``hold_from``).
Secret values are matched without control characters, which keeps
terminal escape sequences next to a secret intact.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass

from termrelay.config.settings import SecurityConfig

logger = logging.getLogger(__name__)

DEFAULT_MARKER = "[REDACTED]"

# A secret value: printable, no whitespace, no control characters.
_VALUE = r"[^\s\x00-\x1f\x7f'\"]+"

_KEY_BEGIN = re.compile(r"-----BEGIN (?:[A-Z]+ )?PRIVATE KEY-----")
_KEY_END = re.compile(r"-----END (?:[A-Z]+ )?PRIVATE KEY-----")


@dataclass(frozen=True)
class RedactionPattern:
    """A named secret shape.

    When ``keep_prefix`` is set, the first regex group (e.g. ``password=``)
    is kept and only the value is replaced.
    """

    name: str
    regex: re.Pattern[str]
    keep_prefix: bool = False


DEFAULT_PATTERNS: tuple[RedactionPattern, ...] = (
    RedactionPattern(
        "credential_assignment",
        re.compile(
            r"(\b(?:password|passwd|pwd|secret|api[_-]?key|apikey|access[_-]?token|"
            r"auth[_-]?token|token|client[_-]?secret)\s*[:=]\s*)" + _VALUE,
            re.IGNORECASE,
        ),
        keep_prefix=True,
    ),
    RedactionPattern(
        "bearer_token",
        re.compile(r"(\bBearer\s+)[A-Za-z0-9\-._~+/]{8,}=*", re.IGNORECASE),
        keep_prefix=True,
    ),
    RedactionPattern(
        "url_credentials",
        re.compile(r"(\b[a-z][a-z0-9+.\-]*://[^\s:/@\x00-\x1f]+:)[^\s@/\x00-\x1f]+(?=@)", re.IGNORECASE),
        keep_prefix=True,
    ),
    RedactionPattern("aws_access_key", re.compile(r"\b(?:AKIA|ASIA)[0-9A-Z]{16}\b")),
    RedactionPattern(
        "provider_token",
        re.compile(r"\b(?:sk-[A-Za-z0-9_\-]{20,}|gh[pousr]_[A-Za-z0-9]{30,}|xox[baprs]-[A-Za-z0-9\-]{10,})"),
    ),
    RedactionPattern(
        "private_key",
        re.compile(
            r"-----BEGIN (?:[A-Z]+ )?PRIVATE KEY-----[\s\S]*?-----END (?:[A-Z]+ )?PRIVATE KEY-----"
        ),
    ),
)


class SecurityFilter:
    """Pattern-based redaction with a fixed, extensible set of patterns."""

    def __init__(
        self,
        patterns: tuple[RedactionPattern, ...] | list[RedactionPattern] | None = None,
        marker: str = DEFAULT_MARKER,
        enabled: bool = True,
    ) -> None:
        self._patterns: list[RedactionPattern] = list(
            DEFAULT_PATTERNS if patterns is None else patterns
        )
        self._marker = marker
        self._enabled = enabled

    @classmethod
    def from_config(cls, config: SecurityConfig) -> SecurityFilter:
        """Build a filter with the default patterns plus configured extras."""
        security_filter = cls(marker=config.marker, enabled=config.redaction_enabled)
        for extra in config.extra_patterns:
            security_filter.add_pattern(extra.name, extra.pattern, extra.keep_prefix)
        return security_filter

    @property
    def marker(self) -> str:
        return self._marker

    @property
    def patterns(self) -> list[RedactionPattern]:
        return list(self._patterns)

    @property
    def enabled(self) -> bool:
        return self._enabled

    def add_pattern(self, name: str, pattern: str, keep_prefix: bool = False) -> None:
        """Register an extra secret shape.

        Raises:
            ValueError: If ``pattern`` is not a valid regex, or
                ``keep_prefix`` is set without a capturing group.
        """
        try:
            compiled = re.compile(pattern)
        except re.error as e:
            raise ValueError(f"Invalid redaction pattern {name!r}: {e}") from e
        if keep_prefix and compiled.groups < 1:
            raise ValueError(f"Pattern {name!r} needs a prefix group to keep")
        self._patterns.append(RedactionPattern(name, compiled, keep_prefix))
        logger.debug("Added redaction pattern %s", name)

    def filter(self, text: str) -> tuple[str, bool]:
        """Replace every secret-shaped substring with the marker.

        Returns:
            ``(filtered_text, matched)``.
        """
        return self.filter_continuation("", text)

    def filter_continuation(self, context: str, text: str) -> tuple[str, bool]:
        """Filter ``text`` as the continuation of already-released ``context``.

        Patterns are matched over ``context + text`` so a secret whose
        key (or first characters) went out earlier is still caught; only
        the part inside ``text`` is replaced and returned.
        """
        if not self._enabled or not text:
            return text, False
        offset = len(context)
        spans = [
            (max(start, offset) - offset, end - offset)
            for start, end in self._spans(context + text)
            if end > offset
        ]
        if not spans:
            return text, False
        pieces: list[str] = []
        position = 0
        for start, end in spans:
            pieces.append(text[position:start])
            pieces.append(self._marker)
            position = end
        pieces.append(text[position:])
        logger.debug("Redacted %d secret(s)", len(spans))
        return "".join(pieces), True

    def hold_from(self, text: str) -> int:
        """Index from which ``text`` could still grow into a secret.

        That is the unterminated last line, or an opened private key
        block that has not been closed yet, whichever starts first.
        """
        if not self._enabled:
            return len(text)
        cut = max(text.rfind("\n"), text.rfind("\r")) + 1
        opened = None
        for match in _KEY_BEGIN.finditer(text):
            opened = match
        if opened is not None and _KEY_END.search(text, opened.end()) is None:
            cut = min(cut, opened.start())
        return cut

    def _spans(self, text: str) -> list[tuple[int, int]]:
        """Merged ``(start, end)`` ranges to replace, in order."""
        found: list[tuple[int, int]] = []
        for pattern in self._patterns:
            for match in pattern.regex.finditer(text):
                start = match.end(1) if pattern.keep_prefix else match.start()
                if match.end() > start:
                    found.append((start, match.end()))
        found.sort()
        merged: list[tuple[int, int]] = []
        for start, end in found:
            if merged and start <= merged[-1][1]:
                merged[-1] = (merged[-1][0], max(merged[-1][1], end))
            else:
                merged.append((start, end))
        return merged
