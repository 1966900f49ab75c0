"""
Local, offline risk heuristics.

RiskScorer is the deterministic scoring pass the classifier pipeline runs
before it contacts the external AI service. The spawn heuristic decides the
initial entropy and signature of a process started from the dashboard.
"""
from dataclasses import dataclass, field
from typing import Callable, Iterable, List, Tuple

from sentinel.sysmon.models import ProcessRecord, RiskLevel

# (entropy, is_signed) for a freshly spawned image
SpawnHeuristic = Callable[[str, str], Tuple[float, bool]]

SUSPICIOUS_NAME_MARKERS = ("unknown", "cheat", "free")
SUSPICIOUS_SPAWN_ENTROPY = 7.2
BASELINE_SPAWN_ENTROPY = 5.0


def suspicious_name_heuristic(name: str, path: str = "") -> Tuple[float, bool]:
    """
    Flags images whose name contains a known-bad marker.

    This is a demonstration heuristic, not a classifier: a flagged name is
    given packed-looking entropy and treated as unsigned.
    """
    lowered = (name or "").lower()
    if any(marker in lowered for marker in SUSPICIOUS_NAME_MARKERS):
        return SUSPICIOUS_SPAWN_ENTROPY, False
    return BASELINE_SPAWN_ENTROPY, True


def marker_heuristic(markers: Iterable[str], suspicious_entropy: float = SUSPICIOUS_SPAWN_ENTROPY) -> SpawnHeuristic:
    """Builds a spawn heuristic matching custom markers against both name and path."""
    markers = tuple(m.lower() for m in markers)

    def heuristic(name: str, path: str = "") -> Tuple[float, bool]:
        haystack = f"{name} {path}".lower()
        if any(m in haystack for m in markers):
            return suspicious_entropy, False
        return BASELINE_SPAWN_ENTROPY, True

    return heuristic


@dataclass
class RiskReport:
    level: RiskLevel
    score: float
    reasons: List[str] = field(default_factory=list)

    @property
    def reasoning(self) -> str:
        return "; ".join(self.reasons) if self.reasons else "baseline"


class RiskScorer:
    """Weighted feature scoring of a single process record."""

    def __init__(
        self,
        entropy_threshold: float = 7.2,
        cpu_threshold: float = 60.0,
        handle_threshold: int = 1000,
        malicious_cutoff: float = 0.7,
        suspicious_cutoff: float = 0.45,
    ):
        self.entropy_threshold = entropy_threshold
        self.cpu_threshold = cpu_threshold
        self.handle_threshold = handle_threshold
        self.malicious_cutoff = malicious_cutoff
        self.suspicious_cutoff = suspicious_cutoff

    def evaluate(self, proc: ProcessRecord) -> RiskReport:
        score = 0.0
        reasons: List[str] = []

        if not proc.is_signed:
            score += 0.25
            reasons.append("unsigned binary")
        if proc.entropy > self.entropy_threshold:
            score += 0.25
            reasons.append("high entropy image")
        if proc.cpu_percent > self.cpu_threshold:
            score += 0.15
            reasons.append("sustained CPU usage")
        if proc.handle_count > self.handle_threshold:
            score += 0.1
            reasons.append("excessive handles")
        if proc.has_unsigned_modules():
            score += 0.15
            reasons.append("unsigned module loaded")

        # round before comparing against the cutoffs
        score = round(score, 4)
        if score >= self.malicious_cutoff:
            level = RiskLevel.MALICIOUS
        elif score >= self.suspicious_cutoff:
            level = RiskLevel.SUSPICIOUS
        else:
            level = RiskLevel.SAFE

        return RiskReport(level=level, score=min(score, 1.0), reasons=reasons)

    @staticmethod
    def recommended_action(level: RiskLevel) -> str:
        if level == RiskLevel.MALICIOUS:
            return "Kill"
        if level == RiskLevel.SUSPICIOUS:
            return "Monitor"
        return "Ignore"
