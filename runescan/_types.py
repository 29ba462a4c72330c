from __future__ import annotations

from dataclasses import dataclass, asdict, field
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional, Sequence, Tuple


class OperationClass(str, Enum):
    OBSERVE = "observe"
    EXECUTE = "execute"
    SIMULATE = "simulate"


class CheckpointCategory(str, Enum):
    LOAD = "LOAD"
    FUNC = "FUNC"
    SYSCALL = "SYSCALL"
    MEM = "MEM"
    NET = "NET"
    SEC = "SEC"
    PERF = "PERF"
    EXIT = "EXIT"


@dataclass(frozen=True)
class ExecutionRequest:
    target: str
    args: Tuple[str, ...] = ()
    operation: OperationClass = OperationClass.EXECUTE
    force: bool = False
    dry_run: bool = False
    safe_mode: bool = False

    def __post_init__(self):
        # normalize user-supplied sequences so the request stays hashable
        object.__setattr__(self, "args", tuple(self.args))
        object.__setattr__(self, "operation", OperationClass(self.operation))

    @property
    def argv(self) -> Tuple[str, ...]:
        return (self.target,) + self.args


@dataclass(frozen=True)
class Decision:
    allowed: bool
    reason: str
    simulate: bool = False


@dataclass(frozen=True)
class ExecutionResult:
    target: str
    duration: float
    exit_code: int
    pid: int
    peak_memory_kb: int = 0
    stdout_bytes: int = 0
    stderr_bytes: int = 0
    verbose_messages: int = 0
    error_messages: int = 0
    warning_messages: int = 0
    # "<severity>:<tag>" for each output pattern seen, in order of first sighting
    output_alerts: Tuple[str, ...] = ()
    was_signalled: bool = False
    signal: Optional[int] = None
    simulated: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Checkpoint:
    id: str
    category: CheckpointCategory
    context: str
    time_offset: float
    timestamp: str
    trigger_fired: bool = False
    persisted: bool = True

    def __str__(self):
        mark = " *" if self.trigger_fired else ""
        tail = f" -> {self.context}" if self.context else ""
        return f"[{self.timestamp}] {self.id}{mark}{tail}"

    def mark_fired(self) -> None:
        self.trigger_fired = True

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "id": self.id,
            "timestamp": self.timestamp,
            "category": self.category.value,
            "time_offset_seconds": round(self.time_offset, 6),
            "trigger_fired": self.trigger_fired,
        }
        if self.context:
            d["context"] = self.context
        return d

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Checkpoint":
        return cls(
            id=d["id"],
            category=CheckpointCategory(d["category"]),
            context=d.get("context", ""),
            time_offset=float(d["time_offset_seconds"]),
            timestamp=d["timestamp"],
            trigger_fired=bool(d["trigger_fired"]),
        )


@dataclass
class Trigger:
    pattern: str
    name: str
    callback: Callable[[Checkpoint], Any]
    enabled: bool = True


@dataclass(frozen=True)
class RiskAssessment:
    """Verdict for a live run: score 1-10, where 1 is the highest risk."""
    score: int
    classification: str
    contributing_signals: Tuple[str, ...] = ()
    indicators: Mapping[str, int] = field(default_factory=dict)

    SCORE_MIN = 1
    SCORE_MAX = 10

    @property
    def risk_level(self) -> str:
        if self.score >= 8:
            return "low_risk"
        if self.score >= 6:
            return "medium_risk"
        if self.score >= 4:
            return "high_risk"
        return "critical_risk"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "scale": "security_score",
            "score": self.score,
            "score_range": [self.SCORE_MIN, self.SCORE_MAX],
            "classification": self.classification,
            "risk_level": self.risk_level,
            "contributing_signals": list(self.contributing_signals),
            "indicators": dict(self.indicators),
        }


@dataclass(frozen=True)
class PackageRiskAssessment:
    """Verdict for static package inspection: 0-20 risk points, higher is riskier."""
    risk_points: int
    findings: Tuple[str, ...] = ()
    specific_threats: Tuple[str, ...] = ()

    POINTS_MIN = 0
    POINTS_MAX = 20

    @property
    def risk_level(self) -> str:
        if self.risk_points >= 15:
            return "critical_risk"
        if self.risk_points >= 10:
            return "high_risk"
        if self.risk_points >= 5:
            return "moderate_risk"
        if self.risk_points >= 2:
            return "low_risk"
        return "minimal_risk"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "scale": "risk_points",
            "risk_points": self.risk_points,
            "points_range": [self.POINTS_MIN, self.POINTS_MAX],
            "risk_level": self.risk_level,
            "findings": list(self.findings),
            "specific_threats": list(self.specific_threats),
        }


StaticSignals = Optional[Sequence[str]]
