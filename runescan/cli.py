from __future__ import annotations

import argparse
import dataclasses
import logging
import sys
from typing import Sequence, Optional

import yaml

from ._types import ExecutionRequest, OperationClass
from .config import load_config
from .errors import AuthorizationError, RunescanError
from .report import build_report, dumps_report, print_report, save_report
from .scanner import AnalysisContext, analyze
from .utils import CheckpointSerializer, parse_symbol_table, read_symbols


def main(argv: Optional[Sequence[str]] = None) -> int:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    logger = logging.getLogger("runescan")

    parser = argparse.ArgumentParser(
        prog="runescan",
        description="Run an executable under supervision and classify how it behaved",
        epilog="runescan options may also follow the target and its arguments. Put '--' before "
               "target arguments that start with '-', e.g. runescan -f ./prog -- -v",
    )

    parser.add_argument("target", help="Executable (or package file with --observe) to analyze.")
    parser.add_argument("args", nargs="*", help="Arguments passed to the target.")

    parser.add_argument(
        "-f", "--force",
        action="store_true",
        help="Explicitly permit executing the target on this system."
    )

    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Simulate execution without spawning a process."
    )

    parser.add_argument(
        "--safe-mode",
        action="store_true",
        help="Prefer non-executing analysis (overridden by --force)."
    )

    parser.add_argument(
        "--observe",
        action="store_true",
        help="Static package inspection only, nothing is executed."
    )

    parser.add_argument(
        "--symbols",
        type=str,
        default=None,
        help="nm output for the target, used to flag dangerous functions "
             "(default: run nm on the target itself)."
    )

    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to a YAML configuration file with a 'runescan' section."
    )

    parser.add_argument(
        "--report-file",
        type=str,
        default=None,
        help="Write JSON report to this path."
    )

    parser.add_argument(
        "--checkpoints-file",
        type=str,
        default=None,
        help="Write the checkpoint timeline as JSON to this path."
    )

    parser.add_argument(
        "--json",
        action="store_true",
        help="Print the JSON report to stdout instead of the summary."
    )

    parser.add_argument(
        "--no-print",
        action="store_true",
        help="Do not print summary report to stdout."
    )

    args = parser.parse_args(argv)

    try:
        config = load_config(args.config)
    except (OSError, yaml.YAMLError) as e:
        logger.error("Invalid configuration: %r", e, exc_info=logger.isEnabledFor(logging.DEBUG))
        return 2
    if args.json:
        # keep stdout parseable
        config = dataclasses.replace(config, passthrough=False)

    symbols = None
    if args.symbols:
        try:
            with open(args.symbols, "r", errors="replace") as f:
                symbols = parse_symbol_table(f.read())
        except OSError as e:
            logger.error("Cannot read symbol file %s: %r", args.symbols, e)
            return 2
    elif args.force and not (args.observe or args.dry_run):
        symbols = read_symbols(args.target)

    request = ExecutionRequest(
        target=args.target,
        args=tuple(args.args),
        operation=OperationClass.OBSERVE if args.observe else OperationClass.EXECUTE,
        force=args.force,
        dry_run=args.dry_run,
        safe_mode=args.safe_mode,
    )

    try:
        outcome = analyze(request, AnalysisContext.create(config), static_signals=symbols)
    except AuthorizationError as e:
        print(e.decision.reason, file=sys.stderr)
        return 1
    except RunescanError as e:
        logger.error("Analysis failed for %s: %s", args.target, e, exc_info=logger.isEnabledFor(logging.DEBUG))
        print(f"runescan: {e}", file=sys.stderr)
        return 2

    report = build_report(outcome)
    if args.report_file:
        save_report(report, args.report_file)
    if args.checkpoints_file:
        try:
            CheckpointSerializer.dump(outcome.timeline.all(), args.checkpoints_file)
        except OSError as e:
            logger.error("Failed to save checkpoints: %r", e, exc_info=logger.isEnabledFor(logging.DEBUG))

    if args.json:
        print(dumps_report(report))
    elif not args.no_print:
        print_report(report)

    result = outcome.result
    if result is not None and result.exit_code != 0:
        logger.warning("Target exited with code %d", result.exit_code)
        return result.exit_code
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
