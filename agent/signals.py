# Folder: ci-triage/agent/signals.py
#
# Should a job that did NOT fail still go to the model?
# Only when the log shows something worth a look: warnings piling up,
# flaky retries, or resource pressure.
#
# The phrase list and threshold are a replaceable policy - pass your own
# SuspicionPolicy to the orchestrator.

import re
from dataclasses import dataclass, field
from typing import List, Tuple

DEFAULT_PATTERNS: Tuple[str, ...] = (
    r"\bdeprecat",
    r"\bflak(?:y|e)\b",
    r"\bretry(?:ing)?\b",
    r"\btimed? ?out\b",
    r"out of memory|\bOOM(?:Killed)?\b",
    r"no space left on device",
    r"heap (?:limit|out of memory)",
    r"rate.?limit",
    r"connection (?:reset|refused)",
    r"\bsegmentation fault\b",
    r"\bkilled\b",
    r"\bvulnerabilit(?:y|ies)\b",
)

_WARNING_LINE = re.compile(r"^\s*(?:##\[warning\]|warn(?:ing)?\b|\[warn(?:ing)?\])", re.I)


@dataclass(frozen=True)
class SuspicionPolicy:
    patterns: Tuple[str, ...] = DEFAULT_PATTERNS
    warning_threshold: int = 5               # more warning lines than this is suspicious
    _compiled: List["re.Pattern"] = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        object.__setattr__(
            self, "_compiled", [re.compile(p, re.I) for p in self.patterns]
        )

    def signals(self, log_text: str) -> List[str]:
        """Human-readable reasons the log looks suspicious (empty = clean)"""
        found = []
        for pattern in self._compiled:
            m = pattern.search(log_text or "")
            if m:
                found.append(f"pattern:{m.group(0).lower()}")

        warnings = sum(1 for line in (log_text or "").splitlines() if _WARNING_LINE.search(line))
        if warnings > self.warning_threshold:
            found.append(f"warnings:{warnings}")
        return found

    def is_suspicious(self, log_text: str) -> bool:
        return bool(self.signals(log_text))
