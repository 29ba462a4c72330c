from __future__ import annotations

import io
import logging
import os
import re
import select
import shutil
import signal
import stat
import subprocess
import sys
import time
from enum import Enum
from typing import Any, BinaryIO, Callable, Dict, List, NamedTuple, Optional, Tuple

from ._types import CheckpointCategory, Decision, ExecutionRequest, ExecutionResult, OperationClass
from .checkpoint import Timeline
from .config import ScanConfig
from .errors import AuthorizationError, ExecutionError, SpawnError, ValidationError
from .safety_gate import SafetyGate

logger = logging.getLogger(__name__)

SIMULATED_DURATION = 0.001
SIMULATED_PID = 0

_SHELL_METACHARS = (";", "|", "&")

VERBOSE_MARKERS = ("verbose", "==>", "<==")
ERROR_MARKERS = ("error",)
WARNING_MARKERS = ("warning",)


class OutputPattern(NamedTuple):
    regex: re.Pattern
    tag: str
    category: CheckpointCategory
    severity: str


def _pattern(rx: str, tag: str, category: CheckpointCategory, severity: str) -> OutputPattern:
    return OutputPattern(re.compile(rx, re.IGNORECASE), tag, category, severity)


# first match per line wins; info hits are not recorded
OUTPUT_PATTERNS: Tuple[OutputPattern, ...] = (
    _pattern(r"leaked_memory|memory leak", "memory_leak", CheckpointCategory.SEC, "critical"),
    _pattern(r"buffer overflow", "buffer_overflow", CheckpointCategory.SEC, "critical"),
    _pattern(r"path traversal", "path_traversal", CheckpointCategory.SEC, "critical"),
    _pattern(r"sensitive file accessible", "privilege_escalation", CheckpointCategory.SEC, "critical"),
    _pattern(r"performance degradation", "resource_exhaustion", CheckpointCategory.SEC, "critical"),
    _pattern(r"\bnc\s", "netcat", CheckpointCategory.NET, "critical"),
    _pattern(r"intentional flaw", "test_vulnerability", CheckpointCategory.SEC, "warning"),
    _pattern(r"permission denied", "permission_denied", CheckpointCategory.SEC, "warning"),
    _pattern(r"\bwget\b", "download", CheckpointCategory.NET, "warning"),
    _pattern(r"\bcurl\b", "http_request", CheckpointCategory.NET, "warning"),
    _pattern(r"\bexecv", "program_execution", CheckpointCategory.SEC, "warning"),
    _pattern(r"system\(\)", "shell_command", CheckpointCategory.SEC, "warning"),
    _pattern(r"\bfork\b", "process_creation", CheckpointCategory.SEC, "info"),
)
PATTERNS_BY_TAG: Dict[str, OutputPattern] = {p.tag: p for p in OUTPUT_PATTERNS}
RECORDED_SEVERITIES = ("warning", "critical")


class MonitorState(Enum):
    UNSTARTED = "unstarted"
    VALIDATED = "validated"
    SPAWNED = "spawned"
    RUNNING = "running"
    REAPED = "reaped"
    FINALIZED = "finalized"
    FAILED = "failed"


def read_rss_kb(pid: int) -> Optional[int]:
    """Resident set size of `pid` in KB from /proc, or None once it is gone."""
    path = f"/proc/{pid}/status"
    try:
        with open(path) as fh:
            for line in fh:
                if line.startswith("VmRSS:"):
                    return int(line.split()[1])
    except (FileNotFoundError, ProcessLookupError, PermissionError, ValueError, IndexError):
        return None
    return None


class OutputScanner:
    """
    Scans child output line by line, across chunk boundaries.

    Counts lines carrying verbose/error/warning markers and records the
    first OUTPUT_PATTERNS hit of each line. `alerts` maps the tag of every
    warning or critical pattern seen to the number of lines it matched.
    """

    def __init__(self):
        self.verbose = 0
        self.errors = 0
        self.warnings = 0
        self.alerts: Dict[str, int] = {}
        self._partial = b""

    def feed(self, chunk: bytes) -> None:
        data = self._partial + chunk
        *lines, self._partial = data.split(b"\n")
        for line in lines:
            self._scan_line(line)

    def close(self) -> None:
        if self._partial:
            self._scan_line(self._partial)
            self._partial = b""

    def _scan_line(self, raw: bytes) -> None:
        line = raw.decode("utf-8", "replace").lower()
        if any(m in line for m in VERBOSE_MARKERS):
            self.verbose += 1
        if any(m in line for m in ERROR_MARKERS):
            self.errors += 1
        if any(m in line for m in WARNING_MARKERS):
            self.warnings += 1

        hit = next((p for p in OUTPUT_PATTERNS if p.regex.search(line)), None)
        if hit is None or hit.severity not in RECORDED_SEVERITIES:
            return
        if hit.tag not in self.alerts:
            logger.warning("Output pattern recognized (%s): %s", hit.severity, hit.tag)
        self.alerts[hit.tag] = self.alerts.get(hit.tag, 0) + 1


def _forward(sink: Optional[Any], chunk: bytes) -> None:
    if sink is None:
        return
    buf = getattr(sink, "buffer", None)
    if buf is not None:
        buf.write(chunk)
        buf.flush()
    elif isinstance(sink, io.TextIOBase):
        sink.write(chunk.decode("utf-8", "replace"))
    else:
        sink.write(chunk)


class ExecutionMonitor:
    """
    Supervise one target process at a time.

    run() walks UNSTARTED -> VALIDATED -> SPAWNED -> RUNNING -> REAPED -> FINALIZED,
    or ends in FAILED when validation or spawning fails. The child is not time
    limited here: a caller that needs a deadline calls kill() from elsewhere,
    and the killed run is reported like any other SIGKILL termination.
    """

    def __init__(
            self,
            gate: Optional[SafetyGate] = None,
            timeline: Optional[Timeline] = None,
            config: Optional[ScanConfig] = None,
            spawn: Callable[..., subprocess.Popen] = subprocess.Popen,
            stdout: Optional[BinaryIO] = None,
            stderr: Optional[BinaryIO] = None,
    ):
        self.gate = gate or SafetyGate()
        self.config = config or ScanConfig()
        self.timeline = timeline if timeline is not None else Timeline(capacity=self.config.timeline_capacity)
        self.spawn = spawn
        self._stdout = stdout
        self._stderr = stderr
        self.state = MonitorState.UNSTARTED
        self.decision: Optional[Decision] = None
        self._proc: Optional[subprocess.Popen] = None

    # ----------------------------
    # Public API
    # ----------------------------

    def run(self, request: ExecutionRequest) -> ExecutionResult:
        self.state = MonitorState.UNSTARTED

        decision = self.decision = self.gate.authorize(request)
        if not decision.allowed:
            self.state = MonitorState.FAILED
            raise AuthorizationError(decision)

        if request.operation == OperationClass.OBSERVE:
            self.state = MonitorState.FAILED
            raise ValidationError("observe requests are static only and never run a process")

        if decision.simulate:
            return self._simulate(request)

        try:
            target = self._validate(request)
        except ValidationError:
            self.state = MonitorState.FAILED
            raise

        argv = [target, *request.args]
        started = time.monotonic()
        try:
            proc = self.spawn(argv, stdout=subprocess.PIPE, stderr=subprocess.PIPE)
        except OSError as e:
            self.state = MonitorState.FAILED
            logger.error("Failed to spawn %s: %r", target, e, exc_info=logger.isEnabledFor(logging.DEBUG))
            raise SpawnError(f"failed to execute '{target}': {e}") from e

        self._proc = proc
        self.state = MonitorState.SPAWNED
        logger.debug("Spawned %s (pid %d)", target, proc.pid)

        try:
            returncode, reaped, peak_kb, counters = self._supervise(proc, started)
        except ExecutionError:
            self.state = MonitorState.FAILED
            raise
        finally:
            if proc.returncode is None:
                self.state = MonitorState.FAILED
                self._abort(proc)
            for pipe in (proc.stdout, proc.stderr):
                if pipe is not None:
                    pipe.close()
            self._proc = None

        return self._finalize(request, target, proc.pid, returncode, reaped - started, peak_kb, counters)

    def kill(self) -> bool:
        """Send SIGKILL to the running child. Returns False if nothing is running."""
        proc = self._proc
        if proc is None or proc.returncode is not None:
            return False
        logger.warning("Killing supervised process %d", proc.pid)
        proc.kill()
        return True

    # ----------------------------
    # Stages
    # ----------------------------

    def _abort(self, proc: subprocess.Popen) -> None:
        # supervision ended early: never leave the child running or unreaped
        logger.warning("Supervision of pid %d aborted, killing it", proc.pid)
        try:
            proc.kill()
            proc.wait()
        except OSError as e:
            logger.error("Could not reap pid %d: %r", proc.pid, e, exc_info=logger.isEnabledFor(logging.DEBUG))

    def _validate(self, request: ExecutionRequest) -> str:
        cfg = self.config
        target = request.target

        if not target:
            raise ValidationError("empty executable path")
        if len(target) >= cfg.max_arg_length:
            raise ValidationError(f"executable path too long (max {cfg.max_arg_length} characters)")
        if any(c in target for c in _SHELL_METACHARS):
            raise ValidationError("executable path contains dangerous characters")

        if len(request.args) > cfg.max_args:
            raise ValidationError(f"too many arguments (max {cfg.max_args})")
        for i, arg in enumerate(request.args):
            if len(arg) > cfg.max_arg_length:
                raise ValidationError(f"argument {i} too long (max {cfg.max_arg_length} characters)")
            if any(c in arg for c in _SHELL_METACHARS):
                logger.warning("Argument %d contains shell metacharacters: %r", i, arg)

        if os.sep not in target:
            # a bare name would be looked up on PATH by exec, so pin it down first
            target = os.path.abspath(target) if os.path.exists(target) else (shutil.which(target) or target)

        try:
            st = os.stat(target)
        except OSError as e:
            raise ValidationError(f"cannot access executable '{target}': {e.strerror}") from e

        if not stat.S_ISREG(st.st_mode):
            raise ValidationError(f"'{target}' is not a regular file")
        if not st.st_mode & stat.S_IXUSR:
            logger.warning("File is not executable: %s", target)

        self.state = MonitorState.VALIDATED
        return target

    def _supervise(self, proc: subprocess.Popen, started: float) -> Tuple[int, float, int, Dict[str, Any]]:
        cfg = self.config
        out_sink = self._stdout if self._stdout is not None else (sys.stdout if cfg.passthrough else None)
        err_sink = self._stderr if self._stderr is not None else (sys.stderr if cfg.passthrough else None)

        scanners = {"stdout": OutputScanner(), "stderr": OutputScanner()}
        byte_counts = {"stdout": 0, "stderr": 0}
        streams: Dict[int, Tuple[str, Optional[Any]]] = {}
        for name, pipe, sink in (("stdout", proc.stdout, out_sink), ("stderr", proc.stderr, err_sink)):
            fd = pipe.fileno()
            os.set_blocking(fd, False)
            streams[fd] = (name, sink)

        open_fds: List[int] = list(streams)
        returncode: Optional[int] = None
        reaped = started
        peak_kb = 0

        while returncode is None or open_fds:
            if returncode is None:
                try:
                    returncode = proc.poll()
                except OSError as e:
                    raise ExecutionError(f"failed to wait for pid {proc.pid}: {e}") from e

                if returncode is None:
                    self.state = MonitorState.RUNNING
                    rss = read_rss_kb(proc.pid)
                    if rss is not None and rss > peak_kb:
                        peak_kb = rss
                else:
                    reaped = time.monotonic()
                    self.state = MonitorState.REAPED

            if open_fds:
                ready, _, _ = select.select(open_fds, [], [], cfg.read_timeout)
                for fd in ready:
                    name, sink = streams[fd]
                    try:
                        chunk = os.read(fd, cfg.read_chunk)
                    except BlockingIOError:
                        continue
                    if not chunk:
                        open_fds.remove(fd)
                        scanners[name].close()
                        continue
                    byte_counts[name] += len(chunk)
                    _forward(sink, chunk)
                    scanners[name].feed(chunk)

            time.sleep(cfg.poll_interval)

        counters = {
            "stdout_bytes": byte_counts["stdout"],
            "stderr_bytes": byte_counts["stderr"],
            "verbose_messages": sum(s.verbose for s in scanners.values()),
            "error_messages": sum(s.errors for s in scanners.values()),
            "warning_messages": sum(s.warnings for s in scanners.values()),
            "output_alerts": _merge_alerts(scanners.values()),
        }
        return returncode, reaped, peak_kb, counters

    def _finalize(
            self,
            request: ExecutionRequest,
            target: str,
            pid: int,
            returncode: int,
            duration: float,
            peak_kb: int,
            counters: Dict[str, Any],
    ) -> ExecutionResult:
        was_signalled = returncode < 0
        signum = -returncode if was_signalled else None
        exit_code = 128 + signum if was_signalled else returncode

        result = ExecutionResult(
            target=target,
            duration=duration,
            exit_code=exit_code,
            pid=pid,
            peak_memory_kb=peak_kb,
            was_signalled=was_signalled,
            signal=signum,
            **counters,
        )

        tl = self.timeline
        tl.append("EXEC:started", CheckpointCategory.SYSCALL, f"pid={pid} argv={' '.join([target, *request.args])}")
        if was_signalled:
            tl.append(f"SEC:terminated_by_{_signal_name(signum)}", CheckpointCategory.SEC,
                      f"signal {signum}, exit code {exit_code}")
        for alert in result.output_alerts:
            severity, tag = alert.split(":", 1)
            pattern = PATTERNS_BY_TAG[tag]
            tl.append(f"{pattern.category.value}:output:{tag}", pattern.category,
                      f"{severity} pattern in output: {pattern.regex.pattern}")
        if peak_kb:
            tl.append("MEM:peak_rss", CheckpointCategory.MEM, f"{peak_kb} kB")
        tl.append("EXEC:completed", CheckpointCategory.SYSCALL, f"exit_code={exit_code} duration={duration:.6f}s")

        self.state = MonitorState.FINALIZED
        logger.info("Analysis of %s completed in %.3fs (exit code %d)", target, duration, exit_code)
        return result

    def _simulate(self, request: ExecutionRequest) -> ExecutionResult:
        logger.info("Dry run: simulating execution of %s", " ".join(request.argv))
        result = ExecutionResult(
            target=request.target,
            duration=SIMULATED_DURATION,
            exit_code=0,
            pid=SIMULATED_PID,
            simulated=True,
        )
        self.timeline.append("EXEC:simulated", CheckpointCategory.SYSCALL, "dry run, no process spawned")
        self.state = MonitorState.FINALIZED
        return result


def _merge_alerts(scanners) -> Tuple[str, ...]:
    seen: Dict[str, None] = {}
    for scanner in scanners:
        for tag in scanner.alerts:
            seen.setdefault(tag)
    return tuple(f"{PATTERNS_BY_TAG[tag].severity}:{tag}" for tag in seen)


def _signal_name(signum: int) -> str:
    try:
        return signal.Signals(signum).name
    except ValueError:
        return f"SIG{signum}"
