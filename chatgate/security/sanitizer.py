"""
Advisory input sanitizer.

Scans inbound chat text for suspicious patterns (template injection,
script tags, SQL/command injection, prompt-injection phrases). The text is
never modified: the dispatch pipeline only logs what was found and the
message is still processed.

Usage:
    from chatgate.security.sanitizer import sanitize_input

    result = sanitize_input(message.text)
    if result.sanitized:
        logger.warning("Flagged: %s", result.patterns_found)
"""

from __future__ import annotations

import re
import unicodedata
from dataclasses import dataclass, field
from typing import Any


# (name, regex, severity)
DANGEROUS_PATTERNS: list[tuple[str, str, str]] = [
    ("template_injection", r"\{\{.*?(constructor|__proto__|prototype).*?\}\}", "high"),
    ("script_tag", r"<script[\s>]", "high"),
    ("html_event_handler", r"\bon\w+\s*=\s*[\"']", "medium"),
    (
        "prototype_pollution",
        r"__proto__|constructor\s*\[|Object\.assign\s*\(\s*\{\s*\}\s*,",
        "high",
    ),
    ("code_execution", r"\b(eval|exec|Function|setTimeout|setInterval)\s*\(", "medium"),
    (
        "sql_injection",
        r"('\s*(OR|AND)\s+')|(--.*)|(;\s*(DROP|ALTER|DELETE|UPDATE|INSERT)\s)",
        "medium",
    ),
    ("path_traversal", r"\.\./(\.\./){2,}", "medium"),
    ("command_injection", r"`[^`]*\$\(|;\s*(rm|curl|wget|bash|sh|nc)\s", "high"),
    (
        "prompt_injection",
        r"(ignore|disregard)\s+(all\s+)?(previous|prior|above)\s+(instructions?|prompts?|rules?)",
        "high",
    ),
    ("jailbreak", r"do\s+anything\s+now|jailbreak(ed)?\s+mode", "critical"),
]

_COMPILED = [
    (name, re.compile(pattern, re.IGNORECASE), severity)
    for name, pattern, severity in DANGEROUS_PATTERNS
]

SEVERITY_ORDER = ("none", "low", "medium", "high", "critical")


@dataclass
class SanitizeResult:
    text: str
    sanitized: bool = False
    patterns_found: list[str] = field(default_factory=list)
    risk_level: str = "none"

    def to_dict(self) -> dict[str, Any]:
        return {
            "text": self.text,
            "sanitized": self.sanitized,
            "patterns_found": self.patterns_found,
            "risk_level": self.risk_level,
        }


def normalize_unicode(text: str) -> str:
    """NFC-normalize so look-alike compositions match the patterns."""
    return unicodedata.normalize("NFC", text)


def sanitize_input(text: str | None) -> SanitizeResult:
    """
    Flag dangerous patterns in text without changing it.

    Args:
        text: Raw inbound text (None and non-strings are treated as empty)

    Returns:
        SanitizeResult with the original text and the names of every
        pattern that matched, in declaration order
    """
    if not text or not isinstance(text, str):
        return SanitizeResult(text="")

    normalized = normalize_unicode(text)
    found: list[str] = []
    worst = "none"

    for name, regex, severity in _COMPILED:
        if regex.search(normalized):
            found.append(name)
            if SEVERITY_ORDER.index(severity) > SEVERITY_ORDER.index(worst):
                worst = severity

    return SanitizeResult(
        text=text,
        sanitized=bool(found),
        patterns_found=found,
        risk_level=worst,
    )
