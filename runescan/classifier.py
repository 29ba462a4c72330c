#!/usr/bin/env python3
"""
Threat Classifier
=================

Turns an ExecutionResult (and optionally symbol names harvested from nm-style
output) into a RiskAssessment on the 1-10 security score scale, 1 = worst.

- Termination mode is looked up first: signal termination is keyed by signal
  number, normal exit by exit code.
- Secondary adjustments are additive and each one is clamped to 1-10 as it
  is applied: memory growth rate, filename patterns, dangerous symbols,
  alerts raised by patterns in the child's output.
- Every input yields an assessment. Odd values fall back to generic rows.

PackageRiskAssessor is the separate 0-20 "risk points" scale for static
package inspection (observe class). The two scales are never mixed.
"""

import logging
import os
import re
import signal
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from ._types import ExecutionResult, PackageRiskAssessment, RiskAssessment, StaticSignals

logger = logging.getLogger(__name__)


# ----------------------------
# Decision tables
# ----------------------------

# (classification, base score, indicator overrides)
Row = Tuple[str, int, Dict[str, int]]

SIGNAL_TABLE: Dict[int, Row] = {
    signal.SIGSEGV: ("critical_memory_corruption", 1,
                     {"buffer_overflow_risk": 5, "use_after_free_risk": 5, "null_pointer_risk": 5}),
    signal.SIGABRT: ("critical_heap_corruption", 1, {"use_after_free_risk": 5, "memory_leak_indicators": 4}),
    signal.SIGFPE: ("arithmetic_error", 2, {"integer_overflow_risk": 5}),
    signal.SIGILL: ("code_corruption", 2, {"buffer_overflow_risk": 4}),
    signal.SIGBUS: ("memory_alignment_error", 2, {"buffer_overflow_risk": 4, "uninitialized_memory_risk": 3}),
    signal.SIGTRAP: ("debug_trap", 6, {}),
    signal.SIGKILL: ("resource_exhaustion", 4, {"memory_leak_indicators": 3}),
}
UNKNOWN_SIGNAL_ROW: Row = ("unexpected_signal", 4, {})

EXIT_TABLE: Dict[int, Row] = {
    0: ("execution_success", 9, {}),
    1: ("standard_error", 7, {}),
    2: ("standard_error", 7, {}),
}
OTHER_EXIT_ROW: Row = ("abnormal_exit", 6, {})

TEST_PROGRAM_WORDS = ("vulnerable", "vuln")
TEST_PROGRAM_ROW: Row = ("high_risk_test_program", 2, {})

# (filename words, indicator, indicator bump, score penalty)
FILENAME_RULES: Tuple[Tuple[Tuple[str, ...], Optional[str], int, int], ...] = (
    (("overflow", "buffer"), "buffer_overflow_risk", 3, 2),
    (("free", "uaf"), "use_after_free_risk", 3, 2),
    (("format", "printf"), "format_string_vuln", 3, 2),
    (("backdoor", "exploit", "malware", "rootkit", "trojan", "keylog",
      "ransomware", "botnet", "cryptojack", "virus"), None, 0, 3),
)

# symbol -> (indicator, new value or increment, absolute?)
DANGEROUS_FUNCTIONS: Dict[str, Tuple[Optional[str], int, bool]] = {
    "strcpy": ("buffer_overflow_risk", 2, False),
    "strcat": ("buffer_overflow_risk", 2, False),
    "sprintf": ("buffer_overflow_risk", 2, False),
    "vsprintf": ("buffer_overflow_risk", 2, False),
    "gets": ("buffer_overflow_risk", 2, False),
    "scanf": (None, 0, False),
    "system": (None, 0, False),
    "popen": (None, 0, False),
    "execve": (None, 0, False),
    "execl": (None, 0, False),
    "execlp": (None, 0, False),
    "execle": (None, 0, False),
    "execv": (None, 0, False),
    "execvp": (None, 0, False),
}
# deliberately vulnerable test binaries name their functions after the bug
VULN_SYMBOL_MARKERS: Dict[str, Tuple[str, int, bool]] = {
    "buffer_overflow": ("buffer_overflow_risk", 5, True),
    "use_after_free": ("use_after_free_risk", 5, True),
    "double_free": ("use_after_free_risk", 5, True),
    "format_string": ("format_string_vuln", 5, True),
}
MAX_SYMBOL_HITS = 10
MANY_DANGEROUS_FUNCTIONS = 3

INDICATORS = (
    "buffer_overflow_risk",
    "use_after_free_risk",
    "null_pointer_risk",
    "integer_overflow_risk",
    "uninitialized_memory_risk",
    "memory_leak_indicators",
    "format_string_vuln",
)
INDICATOR_MAX = 5

MEMORY_RATIO_MIN_DURATION = 0.1

# output alert tag -> indicator bumped by 2
OUTPUT_ALERT_INDICATORS: Dict[str, str] = {
    "memory_leak": "memory_leak_indicators",
    "buffer_overflow": "buffer_overflow_risk",
}
MAX_OUTPUT_PENALTY = 3


def _clamp(value: int, lo: int, hi: int) -> int:
    return max(lo, min(hi, value))


def _normalize_symbol(symbol: str) -> str:
    return str(symbol).strip().split("@", 1)[0].lstrip("_")


@dataclass
class _Scoring:
    score: int
    classification: str
    signals: List[str] = field(default_factory=list)
    indicators: Dict[str, int] = field(default_factory=lambda: {k: 0 for k in INDICATORS})

    def adjust(self, delta: int, signal_name: Optional[str] = None) -> None:
        self.score = _clamp(self.score + delta, RiskAssessment.SCORE_MIN, RiskAssessment.SCORE_MAX)
        if signal_name and signal_name not in self.signals:
            self.signals.append(signal_name)

    def bump(self, indicator: str, amount: int, absolute: bool = False) -> None:
        value = amount if absolute else self.indicators.get(indicator, 0) + amount
        self.indicators[indicator] = _clamp(value, 0, INDICATOR_MAX)

    def freeze(self) -> RiskAssessment:
        return RiskAssessment(
            score=self.score,
            classification=self.classification,
            contributing_signals=tuple(self.signals),
            indicators=dict(self.indicators),
        )


class ThreatClassifier:
    """Pure function over (ExecutionResult, static signals). Safe to call repeatedly."""

    def __init__(self, memory_ratio_threshold: float = 50000.0):
        self.memory_ratio_threshold = memory_ratio_threshold

    def classify(self, result: ExecutionResult, static_signals: StaticSignals = None) -> RiskAssessment:
        basename = os.path.basename(result.target or "").lower()

        row, termination = self._lookup(result)
        classification, base_score, overrides = row
        scoring = _Scoring(score=base_score, classification=classification, signals=[termination])
        for indicator, value in overrides.items():
            scoring.bump(indicator, value, absolute=True)

        if result.simulated:
            scoring.signals.append("simulated")

        if not result.was_signalled and result.exit_code == 0 and any(w in basename for w in TEST_PROGRAM_WORDS):
            scoring.classification, scoring.score = TEST_PROGRAM_ROW[0], TEST_PROGRAM_ROW[1]
            scoring.adjust(0, "test_program_name")
            logger.debug("Detected intentionally vulnerable test program: %s", basename)

        self._memory_rate(result, scoring)
        self._filename_patterns(basename, scoring)
        if static_signals:
            self._dangerous_symbols(static_signals, scoring)

        if result.output_alerts:
            self._output_alerts(result.output_alerts, scoring)
        if result.error_messages:
            scoring.adjust(0, "error_output")
        if result.warning_messages:
            scoring.adjust(0, "warning_output")

        assessment = scoring.freeze()
        logger.info("Classified %s as %s (score %d/10)", basename or "<target>", assessment.classification,
                    assessment.score)
        return assessment

    # ----------------------------
    # Steps
    # ----------------------------

    def _lookup(self, result: ExecutionResult) -> Tuple[Row, str]:
        if result.was_signalled:
            signum = result.signal if result.signal is not None else result.exit_code - 128
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = f"SIG{signum}"
            return SIGNAL_TABLE.get(signum, UNKNOWN_SIGNAL_ROW), f"signal:{name}"
        return EXIT_TABLE.get(result.exit_code, OTHER_EXIT_ROW), f"exit_code:{result.exit_code}"

    def _memory_rate(self, result: ExecutionResult, scoring: _Scoring) -> None:
        if result.peak_memory_kb <= 0 or result.duration <= MEMORY_RATIO_MIN_DURATION:
            return
        ratio = result.peak_memory_kb / result.duration
        if ratio > self.memory_ratio_threshold:
            scoring.bump("memory_leak_indicators", 1)
            scoring.adjust(-1, "memory_leak_indicators")
            if scoring.classification == "execution_success":
                scoring.classification = "memory_leak_indicators"
            logger.debug("High memory allocation rate (%.0f KB/s) - possible memory leak", ratio)

    def _filename_patterns(self, basename: str, scoring: _Scoring) -> None:
        for words, indicator, bump, penalty in FILENAME_RULES:
            hit = next((w for w in words if w in basename), None)
            if hit is None:
                continue
            if indicator:
                scoring.bump(indicator, bump)
            scoring.adjust(-penalty, f"filename:{hit}")

    def _output_alerts(self, alerts: Iterable[str], scoring: _Scoring) -> None:
        penalty = 0
        for alert in alerts:
            severity, _, tag = alert.partition(":")
            indicator = OUTPUT_ALERT_INDICATORS.get(tag)
            if indicator:
                scoring.bump(indicator, 2)
            if severity == "critical" and penalty < MAX_OUTPUT_PENALTY:
                penalty += 1
                scoring.adjust(-1, f"output:{tag}")
            else:
                scoring.adjust(0, f"output:{tag}")

    def _dangerous_symbols(self, symbols: Iterable[str], scoring: _Scoring) -> None:
        hits = 0
        for raw in symbols:
            if hits >= MAX_SYMBOL_HITS:
                break
            name = _normalize_symbol(raw)
            if not name:
                continue

            rule = DANGEROUS_FUNCTIONS.get(name)
            if rule is None:
                rule = next((r for marker, r in VULN_SYMBOL_MARKERS.items() if marker in name), None)
            if rule is None:
                continue

            signal_name = f"dangerous_function:{name}"
            if signal_name in scoring.signals:
                continue
            hits += 1
            indicator, amount, absolute = rule
            if indicator:
                scoring.bump(indicator, amount, absolute)
            scoring.adjust(-1, signal_name)
            logger.debug("Found potentially dangerous symbol: %s", raw)

        if hits > MANY_DANGEROUS_FUNCTIONS:
            scoring.adjust(-2)
        if hits:
            logger.info("Found %d potentially vulnerable functions in binary", hits)


# ----------------------------
# Static package inspection (0-20 scale)
# ----------------------------

DANGEROUS_NAME_PATTERNS = (
    "hack", "exploit", "backdoor", "malware", "virus", "trojan",
    "keylog", "rootkit", "botnet", "ransomware", "cryptojack",
)
SUSPICIOUS_NAME_PATTERNS = (
    "admin", "root", "sudo", "system", "kernel", "driver",
    "network", "proxy", "tunnel", "bypass",
)

SUSPICIOUS_STRING_RE = re.compile(r"(eval|exec|system|download|wget|curl|nc |bash -c)")
NETWORK_STRING_RE = re.compile(r"(http://|https://|ftp://|tcp|udp|socket|connect)")

SPECIFIC_THREATS: Dict[str, re.Pattern] = {
    "crypto_mining": re.compile(r"(mining|miner|bitcoin|ethereum|monero|xmrig|cryptonight)", re.IGNORECASE),
    "data_theft": re.compile(r"(keylog|screenshot|clipboard|camera|microphone)", re.IGNORECASE),
    "backdoor": re.compile(r"(backdoor|remote|shell|reverse|bind|listen)", re.IGNORECASE),
}
SPECIFIC_THREAT_LIMIT = 3

ARCHIVE_LISTING_LIMIT = 20
SUSPICIOUS_STRING_LIMIT = 10
NETWORK_STRING_LIMIT = 5

MB = 1024 * 1024


def detect_specific_threats(strings: Iterable[str]) -> List[str]:
    """Return `family: line` entries, at most three per threat family."""
    lines = [s.strip() for s in strings if s and s.strip()]
    found: List[str] = []
    for family, rx in SPECIFIC_THREATS.items():
        hits = [line for line in lines if rx.search(line)][:SPECIFIC_THREAT_LIMIT]
        found.extend(f"{family}: {line}" for line in hits)
    return found


class PackageRiskAssessor:
    def assess(
            self,
            path: str,
            size: Optional[int] = None,
            strings: Sequence[str] = (),
            archive_listing: Optional[Sequence[str]] = None,
    ) -> PackageRiskAssessment:
        """`archive_listing` of None means the archive structure could not be inspected."""
        points = 0
        findings: List[str] = []

        def add(n: int, finding: str) -> None:
            nonlocal points
            points = _clamp(points + n, PackageRiskAssessment.POINTS_MIN, PackageRiskAssessment.POINTS_MAX)
            findings.append(finding)

        if size is None:
            try:
                size = os.stat(path).st_size
            except OSError as e:
                logger.warning("Cannot stat %s: %s", path, e)

        if size is not None:
            if size > 500 * MB:
                add(3, "size:extremely_large")
            elif size > 100 * MB:
                add(1, "size:large")
            elif size < 1024:
                add(2, "size:suspiciously_small")

        filename = os.path.basename(path).lower()
        for word in DANGEROUS_NAME_PATTERNS:
            if word in filename:
                add(5, f"filename_critical:{word}")
        for word in SUSPICIOUS_NAME_PATTERNS:
            if word in filename:
                add(1, f"filename_suspicious:{word}")

        if archive_listing is None:
            add(1, "archive:uninspectable")
        else:
            entries = list(archive_listing)[:ARCHIVE_LISTING_LIMIT]
            for line in entries:
                if "postinst" in line or "preinst" in line:
                    add(1, "archive:install_script")
                if "postrm" in line or "prerm" in line:
                    add(1, "archive:removal_script")
            if len(entries) >= ARCHIVE_LISTING_LIMIT:
                add(1, "archive:many_entries")

        suspicious = [s for s in strings if SUSPICIOUS_STRING_RE.search(s)][:SUSPICIOUS_STRING_LIMIT]
        for s in suspicious:
            add(1, f"string:{s.strip()}")

        network = [s for s in strings if NETWORK_STRING_RE.search(s)][:NETWORK_STRING_LIMIT]
        if network:
            add(2, "network_capability")

        threats = detect_specific_threats(strings)
        assessment = PackageRiskAssessment(
            risk_points=points,
            findings=tuple(findings),
            specific_threats=tuple(threats),
        )
        logger.info("Package %s: %d/20 risk points (%s)", filename, points, assessment.risk_level)
        return assessment
