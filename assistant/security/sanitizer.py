"""Prompt-injection detection and neutralization for raw user input.

Evaluates an ordered table of injection patterns against inbound chat
messages before they reach the model or the audit trail.  High-severity
matches are replaced in place with a redaction marker; medium and low
matches are flagged but left intact.  Base64-looking payloads are decoded
and re-scanned with the same table.

The pattern table is plain data: deployments can extend or replace it with
a JSON file (see ``load_pattern_table``) without touching the engine.
"""

import base64
import binascii
import json
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

REDACTION_MARKER = "[REDACTED]"

# ---------------------------------------------------------------------------
# Pattern registry
# ---------------------------------------------------------------------------


class Severity(Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


SEVERITY_WEIGHTS: dict[str, int] = {"high": 30, "medium": 15, "low": 5}
TRUNCATED_FLAG = "truncated"
TRUNCATED_WEIGHT = 10


@dataclass(frozen=True)
class InjectionPattern:
    name: str
    regex: re.Pattern[str]
    severity: Severity

    @property
    def flag(self) -> str:
        return f"{self.severity.value}:{self.name}"


def _p(name: str, pattern: str, severity: Severity) -> InjectionPattern:
    return InjectionPattern(
        name=name,
        regex=re.compile(pattern, re.IGNORECASE | re.DOTALL),
        severity=severity,
    )


DEFAULT_PATTERNS: tuple[InjectionPattern, ...] = (
    _p(
        "instruction_override",
        r"\b(?:ignore|disregard|forget|skip)\s+(?:all\s+|any\s+|the\s+)?"
        r"(?:previous|prior|above|earlier|preceding|your)\s+"
        r"(?:instructions?|prompts?|rules|directions|guidelines|context)\b",
        Severity.HIGH,
    ),
    _p(
        "system_tag",
        r"\[\s*/?\s*(?:system|assistant|inst|sys)\s*\]",
        Severity.HIGH,
    ),
    _p(
        "role_tag",
        r"<\s*/?\s*(?:system|assistant|im_start|im_end|\|im_start\||\|im_end\|)\s*>",
        Severity.HIGH,
    ),
    _p(
        "new_system_prompt",
        r"\b(?:new|updated|override)\s+system\s+(?:prompt|instructions?|message)\s*:",
        Severity.HIGH,
    ),
    _p(
        "role_reassignment",
        r"\byou\s+are\s+(?:now|no\s+longer)\s+(?:a|an|the|in|my)?\b",
        Severity.MEDIUM,
    ),
    _p(
        "roleplay_jailbreak",
        r"\b(?:pretend\s+(?:you\s+are|to\s+be)|jailbreak|dan\s+mode|developer\s+mode)\b",
        Severity.MEDIUM,
    ),
    _p(
        "restriction_bypass",
        r"\b(?:bypass|override|disable)\s+(?:your\s+|the\s+|all\s+)?"
        r"(?:safety|security|restrictions?|filters?|guardrails?)\b",
        Severity.MEDIUM,
    ),
    _p(
        "prompt_extraction",
        r"\b(?:reveal|show|print|repeat|output|tell\s+me)\s+(?:me\s+)?(?:your|the)\s+"
        r"(?:system\s+|initial\s+|hidden\s+)?(?:prompt|instructions|configuration)\b",
        Severity.MEDIUM,
    ),
    _p(
        "template_syntax",
        r"\{\{.*?\}\}|\{%.*?%\}|\$\{[^}]*\}|<%.*?%>",
        Severity.LOW,
    ),
)

# Character -> (flag name, maximum occurrences before flagging)
DEFAULT_CHAR_THRESHOLDS: dict[str, tuple[str, int]] = {
    "`": ("backticks", 10),
    "{": ("braces", 10),
    "<": ("angle_brackets", 10),
    "\\": ("backslashes", 10),
}

_BASE64_CANDIDATE = re.compile(r"[A-Za-z0-9+/]{20,}={0,2}")
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_HORIZONTAL_WS = re.compile(r"[ \t]+")
_BLANK_LINES = re.compile(r"\n\s*\n(?:\s*\n)+")
_TRAILING_WS = re.compile(r"[ \t]+\n")


def load_pattern_table(path: Path) -> tuple[InjectionPattern, ...]:
    """Load patterns from a JSON list of ``{"name", "pattern", "severity"}``."""
    raw = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(raw, list):
        raise ValueError(f"Injection pattern file must hold a JSON list: {path}")
    patterns: list[InjectionPattern] = []
    for item in raw:
        if not isinstance(item, dict):
            raise ValueError(f"Invalid injection pattern entry: {item!r}")
        patterns.append(
            _p(
                str(item["name"]),
                str(item["pattern"]),
                Severity(str(item.get("severity", "medium")).lower()),
            )
        )
    return tuple(patterns)


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------


@dataclass
class SanitizationResult:
    sanitized: str
    flagged: bool
    flags: list[str] = field(default_factory=list)
    original_length: int = 0
    sanitized_length: int = 0

    def as_log_dict(self) -> dict[str, object]:
        return {
            "flagged": self.flagged,
            "flags": list(self.flags),
            "original_length": self.original_length,
            "sanitized_length": self.sanitized_length,
        }


@dataclass(frozen=True)
class BlockDecision:
    blocked: bool
    reason: str | None = None


def get_risk_score(result: SanitizationResult | None) -> int:
    """Weighted 0-100 score over sanitizer flags."""
    if result is None:
        return 0
    score = 0
    for flag in result.flags:
        if flag == TRUNCATED_FLAG:
            score += TRUNCATED_WEIGHT
            continue
        severity = flag.split(":", 1)[0]
        score += SEVERITY_WEIGHTS.get(severity, 0)
    return min(score, 100)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class InputSanitizer:
    """Regex-table prompt-injection sanitizer.

    Parameters
    ----------
    patterns : tuple of ``InjectionPattern``
        Ordered pattern table.  Defaults to ``DEFAULT_PATTERNS``.
    extra_patterns : tuple of ``InjectionPattern``, optional
        Appended after *patterns*, e.g. from ``load_pattern_table``.
    max_length : int
        Inputs longer than this are truncated and flagged.
    """

    def __init__(
        self,
        patterns: tuple[InjectionPattern, ...] = DEFAULT_PATTERNS,
        extra_patterns: tuple[InjectionPattern, ...] = (),
        max_length: int = 2000,
        char_thresholds: dict[str, tuple[str, int]] | None = None,
        min_printable_ratio: float = 0.5,
    ) -> None:
        self._patterns = patterns + extra_patterns
        self._max_length = max_length
        self._char_thresholds = (
            dict(char_thresholds) if char_thresholds is not None else DEFAULT_CHAR_THRESHOLDS
        )
        self._min_printable_ratio = min_printable_ratio

    @property
    def pattern_count(self) -> int:
        return len(self._patterns)

    @property
    def max_length(self) -> int:
        return self._max_length

    # -- Public API ---------------------------------------------------------

    def sanitize(self, text: str) -> SanitizationResult:
        flags: list[str] = []
        original_length = len(text)

        working = text
        if len(working) > self._max_length:
            working = working[: self._max_length]
            flags.append(TRUNCATED_FLAG)

        working = _CONTROL_CHARS.sub("", working)

        for pattern in self._patterns:
            if not pattern.regex.search(working):
                continue
            flags.append(pattern.flag)
            if pattern.severity is Severity.HIGH:
                working = pattern.regex.sub(REDACTION_MARKER, working)

        if self._has_encoded_payload(working):
            flags.append("medium:base64_payload")

        for char, (name, threshold) in self._char_thresholds.items():
            if working.count(char) > threshold:
                flags.append(f"low:excessive_{name}")

        working = self._normalize_whitespace(working)

        return SanitizationResult(
            sanitized=working,
            flagged=any(f.startswith(("high:", "medium:")) for f in flags),
            flags=flags,
            original_length=original_length,
            sanitized_length=len(working),
        )

    def should_block_input(self, text: str) -> BlockDecision:
        """Stricter gate evaluated before ``sanitize``.

        The reason never names the matched pattern.
        """
        high_hits = {
            pattern.name
            for pattern in self._patterns
            if pattern.severity is Severity.HIGH and pattern.regex.search(text)
        }
        if len(high_hits) >= 2:
            return BlockDecision(blocked=True, reason="multiple_injection_patterns")

        if len(text) > 100:
            printable = sum(1 for char in text if char.isprintable() or char in "\n\t")
            if printable / len(text) < self._min_printable_ratio:
                return BlockDecision(blocked=True, reason="binary_content")

        return BlockDecision(blocked=False)

    def matched_flags(self, text: str) -> list[str]:
        return [p.flag for p in self._patterns if p.regex.search(text)]

    # -- Internals ----------------------------------------------------------

    def _has_encoded_payload(self, text: str) -> bool:
        for candidate in _BASE64_CANDIDATE.findall(text):
            padded = candidate + "=" * (-len(candidate) % 4)
            try:
                decoded = base64.b64decode(padded, validate=True).decode("utf-8", errors="ignore")
            except (binascii.Error, ValueError):
                continue
            if decoded and self.matched_flags(decoded):
                return True
        return False

    @staticmethod
    def _normalize_whitespace(text: str) -> str:
        text = text.replace("\r\n", "\n").replace("\r", "\n")
        text = _HORIZONTAL_WS.sub(" ", text)
        text = _TRAILING_WS.sub("\n", text)
        text = _BLANK_LINES.sub("\n\n", text)
        return text.strip()
