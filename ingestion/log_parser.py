# Folder: ci-triage/ingestion/log_parser.py
#
# Small string helpers for job logs:
# redact obvious secrets, keep a bounded tail for analysis,
# and a short excerpt for humans reading the issue.

import re

_REDACTIONS = [
    (re.compile(r"-----BEGIN [A-Z ]+-----[\s\S]*?-----END [A-Z ]+-----"), "[REDACTED_PEM]"),
    (re.compile(r"\b(?:AKIA|ASIA)[A-Z0-9]{16}\b"), "[REDACTED_AWS_KEY]"),
    (re.compile(r"\bAIza[0-9A-Za-z\-_]{35}\b"), "[REDACTED_GOOGLE_KEY]"),
    (re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"), "[REDACTED_EMAIL]"),
    (re.compile(r"\b(?:\d{1,3}\.){3}\d{1,3}\b"), "[REDACTED_IP]"),
    (re.compile(r"\b[A-Za-z0-9_-]{20,}\.[A-Za-z0-9_-]{20,}\.[A-Za-z0-9_-]{20,}\b"), "[REDACTED_JWT]"),
    (re.compile(r"\b[A-Za-z0-9_-]{40,}\b"), "[REDACTED_TOKEN]"),
]

# GitHub prefixes every log line with an ISO timestamp
_TIMESTAMP = re.compile(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}(?:\.\d+)?Z ", re.MULTILINE)


def sanitize(raw: str) -> str:
    if not raw:
        return ""
    text = _TIMESTAMP.sub("", str(raw))
    for pattern, replacement in _REDACTIONS:
        text = pattern.sub(replacement, text)
    return text


def tail_lines(text: str, n: int) -> str:
    """Last n lines of text"""
    if not text:
        return ""
    return "\n".join(text.splitlines()[-n:])


def excerpt(text: str, n: int = 40) -> str:
    """
    First and last n lines, for display.
    Short logs come back whole.
    """
    lines = (text or "").splitlines()
    if len(lines) <= n * 2:
        return "\n".join(lines)
    return "\n".join(lines[:n] + ["..."] + lines[-n:])


_ERROR_LINE = re.compile(r"error|fail|exception|fatal|traceback|panic|##\[error\]", re.I)


def signature_excerpt(text: str, n: int = 40) -> str:
    """
    The lines that describe the failure, used for fingerprinting.
    Runner setup boilerplate at the top of every log is the same for
    all jobs, so error-looking lines win; otherwise the last n lines.
    """
    lines = (text or "").splitlines()
    errors = [line.strip() for line in lines if _ERROR_LINE.search(line)]
    if errors:
        return "\n".join(errors[:n])
    return "\n".join(lines[-n:])
