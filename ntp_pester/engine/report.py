"""
Run report

Ordered outcomes of one run plus derived counts. The report is frozen once
the runner finalizes it.
"""
from typing import Dict, List, Optional, Tuple

from ntp_pester.exceptions import ReportFinalizedError
from ntp_pester.models import Outcome, OutcomeKind, ReportEntry

GLYPHS = {
    OutcomeKind.PASSED: "✅",
    OutcomeKind.FAILED: "❌",
    OutcomeKind.ERRORED: "❓",
    OutcomeKind.SKIPPED: "⏩",
}

LABELS = {
    OutcomeKind.PASSED: "Passed",
    OutcomeKind.FAILED: "Failed",
    OutcomeKind.ERRORED: "Errored",
    OutcomeKind.SKIPPED: "Skipped",
}


def format_entry(entry: ReportEntry) -> List[str]:
    """Status line plus detail lines for Failed/Errored entries"""
    outcome = entry.outcome
    lines = [f"{GLYPHS[outcome.kind]} {entry.name}"]
    if outcome.kind in (OutcomeKind.FAILED, OutcomeKind.ERRORED):
        if outcome.reason:
            lines.append(f" ↳ {outcome.reason}")
        if outcome.detail:
            lines.append(f" ↳ {outcome.detail}")
    return lines


class Report:
    def __init__(self):
        self._entries: List[ReportEntry] = []
        self._finalized = False

    def add(self, name: str, outcome: Outcome, duration_ms: Optional[float] = None) -> ReportEntry:
        if self._finalized:
            raise ReportFinalizedError(f"Report is finalized, cannot add {name}", details={"name": name})
        entry = ReportEntry(name=name, outcome=outcome, duration_ms=duration_ms)
        self._entries.append(entry)
        return entry

    def finalize(self) -> None:
        self._finalized = True

    @property
    def finalized(self) -> bool:
        return self._finalized

    @property
    def entries(self) -> Tuple[ReportEntry, ...]:
        return tuple(self._entries)

    @property
    def total(self) -> int:
        return len(self._entries)

    def counts(self) -> Dict[OutcomeKind, int]:
        counts = {kind: 0 for kind in OutcomeKind}
        for entry in self._entries:
            counts[entry.outcome.kind] += 1
        return counts

    @property
    def success(self) -> bool:
        counts = self.counts()
        return counts[OutcomeKind.FAILED] == 0 and counts[OutcomeKind.ERRORED] == 0

    def summary_lines(self) -> List[str]:
        counts = self.counts()
        return [f"{GLYPHS[kind]} {LABELS[kind]}: {counts[kind]}" for kind in OutcomeKind]

    def lines(self) -> List[str]:
        lines: List[str] = []
        for entry in self._entries:
            lines.extend(format_entry(entry))
        lines.append("")
        lines.extend(self.summary_lines())
        return lines
