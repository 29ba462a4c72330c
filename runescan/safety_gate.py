"""
Execution safety gate
=====================

Decides, before anything runs, whether a request may execute code.

- OBSERVE requests are always allowed: nothing is spawned.
- SIMULATE requests, and any request carrying dry_run, are allowed as a
  simulation: the monitor substitutes a synthetic result.
- EXECUTE requests need force=True. Without it the decision explains what
  would have run and which runescan invocations are safe instead.

The gate performs no I/O besides logging and never raises.
"""

import logging
import shlex
from typing import Dict, List

from ._types import Decision, ExecutionRequest, OperationClass

logger = logging.getLogger(__name__)

# flag -> what it does instead of running the target
SAFE_ALTERNATIVES: Dict[str, str] = {
    "--dry-run": "Simulate execution, nothing is spawned",
    "--observe": "Static inspection, nothing is executed",
}


class SafetyGate:
    def authorize(self, request: ExecutionRequest) -> Decision:
        op = request.operation

        if op == OperationClass.OBSERVE:
            return Decision(True, "observe: static inspection only, no process is spawned")

        if op == OperationClass.SIMULATE:
            if request.force:
                logger.warning("Both simulate and force requested for %s: dry-run wins, nothing is executed",
                               request.target)
            return Decision(True, "simulate: dry-run, no process is spawned", simulate=True)

        # EXECUTE
        if request.dry_run:
            if request.force:
                logger.warning("Both --force and --dry-run given for %s: dry-run wins, nothing is executed",
                               request.target)
            return Decision(True, "dry-run: execution simulated, no process is spawned", simulate=True)

        if request.force:
            if request.safe_mode:
                logger.warning("--force overrides safe mode for %s", request.target)
            return Decision(True, "force: execution explicitly permitted")

        reason = blocked_message(request)
        logger.warning("Execution blocked for %s (no --force)", request.target)
        return Decision(False, reason)


def executing_steps(request: ExecutionRequest) -> List[str]:
    """What an authorized run of `request` would do that executes code."""
    steps = [f"run {shlex.join(request.argv)} (spawns the target with your privileges)"]
    if request.safe_mode:
        steps.append("--safe-mode alone does not stop this: it only prefers non-executing analysis")
    return steps


def force_command(request: ExecutionRequest) -> str:
    cmd = ["runescan", "-f", request.target]
    if request.args:
        cmd += ["--", *request.args]
    return shlex.join(cmd)


def blocked_message(request: ExecutionRequest) -> str:
    lines = [
        "EXECUTION SAFETY BLOCK:",
        "The following would EXECUTE code on your system:",
    ]
    for step in executing_steps(request):
        lines.append(f"  * {step}")
    lines.append("")
    lines.append("FOR YOUR SAFETY:")
    lines.append("  Add -f flag to explicitly permit execution:")
    lines.append(f"    {force_command(request)}")
    lines.append("")
    lines.append("OR USE SAFE ALTERNATIVES:")
    target = shlex.quote(request.target)
    for flag, what in SAFE_ALTERNATIVES.items():
        lines.append(f"    runescan {flag} {target}   # {what}")
    lines.append("")
    lines.append("Execution blocked for your protection.")
    return "\n".join(lines)
