"""
Preflight Issues

Value types for everything the preflight pipeline reports about a file,
plus the scoring rules.

Issues are immutable. Pipeline stages receive a tuple of issues and return a
new, longer tuple, so a stage never mutates what an earlier stage produced.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, Literal


# ═══════════════════════════════════════════════════════════════════════════════
# ISSUE DATA STRUCTURES
# ═══════════════════════════════════════════════════════════════════════════════

Severity = Literal["BLOCKER", "WARNING", "INFO"]

SEVERITIES: tuple[Severity, ...] = ("BLOCKER", "WARNING", "INFO")

# Score penalty per issue of each severity
PENALTIES: dict[str, float] = {
    "BLOCKER": 10,
    "WARNING": 2,
    "INFO": 0.5,
}


@dataclass(frozen=True)
class BoundingBox:
    """Region on a page, normalized to 0..1 of the page size."""
    x: float
    y: float
    w: float
    h: float

    def to_dict(self) -> dict[str, float]:
        return {"x": self.x, "y": self.y, "w": self.w, "h": self.h}


@dataclass(frozen=True)
class Issue:
    """A single preflight finding as it appears in the report."""
    severity: Severity
    code: str                          # e.g. "FONT_NOT_EMBEDDED", "TOOL_MISSING"
    message: str
    page: int | None = None
    bbox: BoundingBox | None = None
    meta: dict[str, Any] | None = field(default=None, compare=False)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "severity": self.severity,
            "code": self.code,
            "message": self.message,
        }
        if self.page is not None:
            data["page"] = self.page
        if self.bbox is not None:
            data["bbox"] = self.bbox.to_dict()
        if self.meta:
            data["meta"] = dict(self.meta)
        return data


Issues = tuple[Issue, ...]


# ═══════════════════════════════════════════════════════════════════════════════
# HELPERS
# ═══════════════════════════════════════════════════════════════════════════════

def blocker(code: str, message: str, **meta: Any) -> Issue:
    return Issue("BLOCKER", code, message, meta=meta or None)


def warning(code: str, message: str, **meta: Any) -> Issue:
    return Issue("WARNING", code, message, meta=meta or None)


def info(code: str, message: str, **meta: Any) -> Issue:
    return Issue("INFO", code, message, meta=meta or None)


def tool_missing_warning(tool_name: str) -> Issue:
    """Issue emitted whenever a check is skipped because its tool is absent."""
    return warning(
        "TOOL_MISSING",
        f"Tool '{tool_name}' is not available. Some checks will be skipped.",
        tool=tool_name,
    )


def count_issues(issues: Iterable[Issue]) -> dict[str, int]:
    """Count issues by severity. All three keys are always present."""
    counts = {severity: 0 for severity in SEVERITIES}
    for issue in issues:
        counts[issue.severity] += 1
    return counts


def compute_score(counts: dict[str, int]) -> float:
    """
    Score = 100 - (BLOCKER * 10) - (WARNING * 2) - (INFO * 0.5), clamped to [0, 100].
    """
    penalties = sum(PENALTIES[severity] * counts.get(severity, 0) for severity in SEVERITIES)
    return max(0, min(100, 100 - penalties))


def summarize(issues: Iterable[Issue]) -> dict[str, Any]:
    """Score and counts for a set of issues, in report shape."""
    counts = count_issues(issues)
    return {"score": compute_score(counts), "counts": counts}
