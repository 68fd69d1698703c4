"""Quality report for the conditioning pipeline.

Every stage records its data-quality findings here instead of only
printing them: tide coverage gaps, KP outside the declared route range,
excessive cross-course distance, coordinate system heuristics and
stages that were skipped for lack of data.  Each finding carries the
stage that raised it, a machine-readable code and a severity.

The report is also logged as it is filled, so a caller following the
log sees the same warnings the report holds.
"""

import json
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Any, Dict, List, Optional

import pandas as pd

from ..utils.logging import get_logger
from ..utils.pagination import page_count, paginate

SEVERITIES = ("info", "soft", "warning", "hard")

logger = get_logger(__name__)


@dataclass(frozen=True)
class QualityIssue:
    """A single data-quality finding."""

    stage: str
    """Stage that raised the finding (e.g. ``"tide"``)."""

    code: str
    """Machine-readable identifier such as ``"tide_coverage"``."""

    severity: str
    """One of ``info``, ``soft``, ``warning`` or ``hard``."""

    message: str
    """Human-readable description."""

    details: Dict[str, Any] = field(default_factory=dict)
    """Values backing the finding (ranges, counts, thresholds)."""


@dataclass
class QualityReport:
    """Ordered collection of :class:`QualityIssue` records."""

    issues: List[QualityIssue] = field(default_factory=list)

    def add(self, stage: str, code: str, severity: str, message: str, **details: Any) -> QualityIssue:
        """Record a finding and log it.

        ``info`` findings are logged at INFO, everything else at
        WARNING.
        """
        if severity not in SEVERITIES:
            raise ValueError(f"unknown severity {severity!r}")
        issue = QualityIssue(stage=stage, code=code, severity=severity, message=message, details=details)
        self.issues.append(issue)
        if severity == "info":
            logger.info("[%s] %s", stage, message)
        else:
            logger.warning("[%s] %s", stage, message)
        return issue

    def warn(self, stage: str, code: str, message: str, **details: Any) -> QualityIssue:
        return self.add(stage, code, "warning", message, **details)

    def by_stage(self, stage: str) -> List[QualityIssue]:
        return [i for i in self.issues if i.stage == stage]

    def by_code(self, code: str) -> List[QualityIssue]:
        return [i for i in self.issues if i.code == code]

    def has_code(self, code: str) -> bool:
        return any(i.code == code for i in self.issues)

    def has_severity(self, severity: str) -> bool:
        return any(i.severity == severity for i in self.issues)

    def worst_severity(self) -> Optional[str]:
        if not self.issues:
            return None
        return max((i.severity for i in self.issues), key=SEVERITIES.index)

    def __len__(self) -> int:
        return len(self.issues)

    def page(self, number: int, page_size: int = 50) -> List[QualityIssue]:
        """Findings on a 1-based page, clamped to the available pages."""
        return paginate(self.issues, number, page_size)

    def pages(self, page_size: int = 50) -> int:
        return page_count(len(self.issues), page_size)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "issue_count": len(self.issues),
            "worst_severity": self.worst_severity(),
            "issues": [asdict(i) for i in self.issues],
        }

    def to_frame(self) -> pd.DataFrame:
        """One row per finding; details kept as a dict column."""
        columns = ["stage", "code", "severity", "message", "details"]
        return pd.DataFrame([asdict(i) for i in self.issues], columns=columns)

    def save(self, path: Path) -> None:
        """Save the report to a JSON file.

        Parameters
        ----------
        path : Path
            Output path, typically ``quality_report.json``.
        """
        with open(path, 'w', encoding='utf-8') as f:
            json.dump(self.to_dict(), f, indent=2, default=str)
