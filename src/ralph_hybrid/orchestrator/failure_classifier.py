"""Deterministic classification of agent output into API-limit and error signals."""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass

FAILURE_CLASSIFIER_VERSION = 1

_API_LIMIT_PATTERNS: tuple[str, ...] = (
    r"usage limit",
    r"rate limit",
    r"too many requests",
    r"5-hour limit",
    r"exceeded.*limit",
    r"quota",
)
_ERROR_PATTERNS: tuple[str, ...] = (
    r"^Error:",
    r"^error:",
    r"FAILED",
    r"AssertionError",
    r"TypeError",
    r"SyntaxError",
    r"Exception",
)

_API_LIMIT_RES = tuple(re.compile(pattern) for pattern in _API_LIMIT_PATTERNS)
_ERROR_RES = tuple(re.compile(pattern, re.MULTILINE) for pattern in _ERROR_PATTERNS)

_ISO_TIMESTAMP_RE = re.compile(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}(?:\.\d+)?Z?\s*")
_BRACKET_TIMESTAMP_RE = re.compile(r"^\[\d{4}-\d{2}-\d{2}\s\d{2}:\d{2}:\d{2}\]\s*")
_COLON_NUMBER_RE = re.compile(r":\d+(?=:|\b)")
_LINE_NUMBER_RE = re.compile(r"line\s+\d+")
_HEX_ADDRESS_RE = re.compile(r"0x[0-9a-fA-F]+")
_WHITESPACE_RE = re.compile(r"\s+")

FINGERPRINT_LENGTH = 16


@dataclass(slots=True)
class ApiLimitMatch:
    """Provider quota condition found in agent output."""

    matched_pattern: str
    line: str


def detect_api_limit(text: str) -> ApiLimitMatch | None:
    """Return the first provider quota pattern found (case-insensitive)."""

    if not text:
        return None
    for line in text.splitlines():
        lowered = line.lower()
        for pattern, compiled in zip(_API_LIMIT_PATTERNS, _API_LIMIT_RES, strict=True):
            if compiled.search(lowered):
                return ApiLimitMatch(matched_pattern=pattern, line=line.strip())
    return None


def extract_error_line(text: str) -> str | None:
    """Return the first line matching the error patterns, in pattern priority order."""

    if not text:
        return None
    for compiled in _ERROR_RES:
        match = compiled.search(text)
        if match is None:
            continue
        start = text.rfind("\n", 0, match.start()) + 1
        end = text.find("\n", match.end())
        return text[start : end if end != -1 else len(text)].strip()
    return None


def last_nonempty_line(text: str) -> str | None:
    for line in reversed(text.splitlines()):
        if line.strip():
            return line.strip()
    return None


def normalize_error(error: str) -> str:
    """Strip volatile parts (timestamps, line numbers, addresses) from an error line."""

    normalized = error.strip()
    normalized = _ISO_TIMESTAMP_RE.sub("", normalized)
    normalized = _BRACKET_TIMESTAMP_RE.sub("", normalized)
    normalized = _COLON_NUMBER_RE.sub("", normalized)
    normalized = _LINE_NUMBER_RE.sub("line ", normalized)
    normalized = _HEX_ADDRESS_RE.sub("0x", normalized)
    normalized = _WHITESPACE_RE.sub(" ", normalized)
    return normalized.strip()


def fingerprint(kind: str, error: str | None) -> str:
    """Stable short fingerprint of a normalized error for repeat detection."""

    normalized = normalize_error(error) if error else "no-output"
    digest = hashlib.sha256(f"{kind}\n{normalized}".encode()).hexdigest()
    return f"{kind}:{digest[:FINGERPRINT_LENGTH]}"
