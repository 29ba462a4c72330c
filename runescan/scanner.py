import logging
import os
import subprocess
from dataclasses import dataclass, field
from typing import Callable, Optional, Tuple

from ._types import (
    CheckpointCategory,
    Decision,
    ExecutionRequest,
    ExecutionResult,
    OperationClass,
    PackageRiskAssessment,
    RiskAssessment,
    StaticSignals,
)
from .checkpoint import Timeline, TriggerRegistry, register_default_triggers
from .classifier import PackageRiskAssessor, ThreatClassifier
from .config import ScanConfig
from .errors import AuthorizationError, ValidationError
from .monitor import ExecutionMonitor
from .safety_gate import SafetyGate
from .utils import extract_strings, list_archive

logger = logging.getLogger(__name__)


@dataclass
class AnalysisContext:
    """Everything one invocation needs, built once and passed down explicitly."""
    config: ScanConfig = field(default_factory=ScanConfig)
    triggers: TriggerRegistry = field(default_factory=TriggerRegistry)
    timeline: Optional[Timeline] = None
    gate: SafetyGate = field(default_factory=SafetyGate)
    classifier: Optional[ThreatClassifier] = None
    package_assessor: PackageRiskAssessor = field(default_factory=PackageRiskAssessor)
    spawn: Callable[..., subprocess.Popen] = subprocess.Popen

    def __post_init__(self):
        if self.timeline is None:
            self.timeline = Timeline(self.triggers, capacity=self.config.timeline_capacity)
        if self.classifier is None:
            self.classifier = ThreatClassifier(self.config.memory_ratio_threshold)

    @classmethod
    def create(cls, config: Optional[ScanConfig] = None, default_triggers: bool = True, **kwargs) -> "AnalysisContext":
        ctx = cls(config=config or ScanConfig(), **kwargs)
        if default_triggers:
            register_default_triggers(ctx.triggers)
        return ctx

    def monitor(self) -> ExecutionMonitor:
        return ExecutionMonitor(gate=self.gate, timeline=self.timeline, config=self.config, spawn=self.spawn)


@dataclass
class AnalysisOutcome:
    request: ExecutionRequest
    decision: Decision
    timeline: Timeline
    result: Optional[ExecutionResult] = None
    assessment: Optional[RiskAssessment] = None
    package_assessment: Optional[PackageRiskAssessment] = None
    static_signals: Tuple[str, ...] = ()


def analyze(
        request: ExecutionRequest,
        context: Optional[AnalysisContext] = None,
        static_signals: StaticSignals = None,
) -> AnalysisOutcome:
    """
    Authorize, then either inspect statically (observe) or supervise a run and classify it.

    Raises AuthorizationError when the gate refuses, and ValidationError,
    SpawnError or ExecutionError when the tooling itself fails. A crashing or
    misbehaving target is never an error here.
    """
    ctx = context or AnalysisContext.create()
    signals = tuple(static_signals or ())

    if request.operation == OperationClass.OBSERVE:
        decision = ctx.gate.authorize(request)
        if not decision.allowed:
            raise AuthorizationError(decision)
        return AnalysisOutcome(
            request=request,
            decision=decision,
            timeline=ctx.timeline,
            package_assessment=_observe(request.target, ctx),
        )

    logger.info("Analyzing %s...", request.target)
    monitor = ctx.monitor()
    result = monitor.run(request)
    assessment = ctx.classifier.classify(result, signals)

    for name in assessment.contributing_signals:
        if name.startswith("dangerous_function:"):
            ctx.timeline.append(f"SEC:{name}", CheckpointCategory.SEC, "symbol imported by target")
    ctx.timeline.append(
        "EXIT:classified",
        CheckpointCategory.EXIT,
        f"{assessment.classification} score={assessment.score}/{RiskAssessment.SCORE_MAX}",
    )

    return AnalysisOutcome(
        request=request,
        decision=monitor.decision,
        timeline=ctx.timeline,
        result=result,
        assessment=assessment,
        static_signals=signals,
    )


def _observe(path: str, ctx: AnalysisContext) -> PackageRiskAssessment:
    if not os.path.isfile(path):
        raise ValidationError(f"cannot inspect '{path}': not a regular file")

    ctx.timeline.append("LOAD:package", CheckpointCategory.LOAD, path)
    try:
        strings = extract_strings(path)
    except OSError as e:
        raise ValidationError(f"cannot read '{path}': {e.strerror}") from e

    assessment = ctx.package_assessor.assess(path, strings=strings, archive_listing=list_archive(path))

    for threat in assessment.specific_threats:
        family = threat.split(":", 1)[0]
        ctx.timeline.append(f"SEC:{family}", CheckpointCategory.SEC, threat)
    if any(f == "network_capability" for f in assessment.findings):
        ctx.timeline.append("NET:network_strings", CheckpointCategory.NET, "network indicators in package strings")
    ctx.timeline.append(
        "EXIT:assessed",
        CheckpointCategory.EXIT,
        f"{assessment.risk_level} points={assessment.risk_points}/{PackageRiskAssessment.POINTS_MAX}",
    )
    return assessment
