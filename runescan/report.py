import logging
from datetime import datetime
from typing import Any, Dict, List

import orjson

from .scanner import AnalysisOutcome
from .utils import describe_exit_code

logger = logging.getLogger(__name__)

BAR_WIDTH = 63
REPORT_FILE_OPTIONS = orjson.OPT_INDENT_2 | orjson.OPT_APPEND_NEWLINE | orjson.OPT_SORT_KEYS


def build_report(outcome: AnalysisOutcome) -> Dict[str, Any]:
    request = outcome.request
    timeline = outcome.timeline

    warnings: List[str] = []
    if timeline.overflow is not None:
        warnings.append(str(timeline.overflow))

    execution = None
    if outcome.result is not None:
        execution = outcome.result.to_dict()
        execution["exit_description"] = describe_exit_code(outcome.result.exit_code)

    return {
        "metadata": {
            "timestamp": datetime.now().isoformat(),
            "target": request.target,
            "argv": list(request.argv),
            "operation": request.operation.value,
            "decision": outcome.decision.reason if outcome.decision else None,
            "simulated": bool(outcome.decision and outcome.decision.simulate),
            "checkpoints_total": len(timeline),
            "checkpoints_dropped": timeline.overflow.dropped if timeline.overflow else 0,
            "static_signals_total": len(outcome.static_signals),
        },
        "execution": execution,
        "assessment": outcome.assessment.to_dict() if outcome.assessment else None,
        "package_assessment": outcome.package_assessment.to_dict() if outcome.package_assessment else None,
        "checkpoints": timeline.export(),
        "warnings": warnings,
    }


def save_report(report: Dict[str, Any], filename: str) -> None:
    try:
        with open(filename, "wb") as f:
            f.write(orjson.dumps(report, option=REPORT_FILE_OPTIONS))
        logger.info("Report saved to %s", filename)
    except OSError as e:
        logger.error("Failed to save report: %r", e, exc_info=logger.isEnabledFor(logging.DEBUG))


def dumps_report(report: Dict[str, Any]) -> str:
    return orjson.dumps(report, option=orjson.OPT_INDENT_2).decode()


def print_report(report: Dict[str, Any]) -> None:
    md = report["metadata"]
    bar = "=" * BAR_WIDTH
    print("\n" + bar)
    print("RUNESCAN EXECUTION ANALYSIS REPORT")
    print(bar)
    print(f"Timestamp           : {md['timestamp']}")
    print(f"Target              : {' '.join(md['argv'])}")
    print(f"Operation           : {md['operation']}{' (simulated)' if md['simulated'] else ''}")

    ex = report["execution"]
    if ex is not None:
        print(f"Duration            : {ex['duration']:.6f} s")
        print(f"PID                 : {ex['pid']}")
        print(f"Exit code           : {ex['exit_code']} ({ex['exit_description']})")
        if ex["was_signalled"]:
            print(f"Signal              : {ex['signal']}")
        print(f"Peak memory         : {ex['peak_memory_kb']} KB")
        print(f"Output bytes        : stdout={ex['stdout_bytes']} stderr={ex['stderr_bytes']}")
        print(f"Output markers      : verbose={ex['verbose_messages']} "
              f"error={ex['error_messages']} warning={ex['warning_messages']}")
        if ex["output_alerts"]:
            print(f"Output alerts       : {', '.join(ex['output_alerts'])}")

    ra = report["assessment"]
    if ra is not None:
        print(f"Security score      : {ra['score']}/{ra['score_range'][1]} ({ra['risk_level']})")
        print(f"Classification      : {ra['classification']}")
        print("Contributing signals:")
        for name in ra["contributing_signals"]:
            print(f"  - {name}")
        print("Risk indicators     :")
        for k, v in ra["indicators"].items():
            if v:
                print(f"  - {k}: {v}/5")

    pa = report["package_assessment"]
    if pa is not None:
        print(f"Risk points         : {pa['risk_points']}/{pa['points_range'][1]} ({pa['risk_level']})")
        print("Findings            :")
        for finding in pa["findings"]:
            print(f"  - {finding}")
        if pa["specific_threats"]:
            print("Specific threats    :")
            for threat in pa["specific_threats"]:
                print(f"  - {threat}")

    print(f"\nCheckpoints ({md['checkpoints_total']}):")
    for cp in report["checkpoints"]:
        mark = " *" if cp["trigger_fired"] else ""
        tail = f" -> {cp['context']}" if "context" in cp else ""
        print(f"  [{cp['timestamp']}] {cp['id']}{mark}{tail}")

    for w in report["warnings"]:
        print(f"\nWARNING: {w}")
    print(bar)
