import shlex

import orjson

from runescan.cli import main
from runescan.utils import CheckpointSerializer
from tests.utils.targets import SEGV_BODY


def test_blocked_without_force(capsys, true_bin):
    assert main([true_bin]) == 1
    err = capsys.readouterr().err
    assert "EXECUTION SAFETY BLOCK" in err
    assert "Execution blocked for your protection." in err


def test_forced_run_succeeds(capsys, true_bin):
    assert main(["-f", true_bin]) == 0
    out = capsys.readouterr().out
    assert "RUNESCAN EXECUTION ANALYSIS REPORT" in out
    assert "execution_success" in out


def test_child_output_is_passed_through(capsys, make_script):
    target = make_script("hello.sh", "echo hello-from-child\n")
    assert main(["--force", "--no-print", target]) == 0
    assert "hello-from-child" in capsys.readouterr().out


def test_child_exit_code_is_propagated(make_script):
    assert main(["-f", "--no-print", make_script("fail.sh", "exit 3\n")]) == 3


def test_signalled_child_propagates_128_plus_signal(make_script):
    assert main(["-f", "--no-print", make_script("crash.sh", SEGV_BODY)]) == 139


def test_dry_run_json(capsys, true_bin):
    assert main(["--dry-run", "--json", true_bin]) == 0
    report = orjson.loads(capsys.readouterr().out)
    assert report["execution"]["simulated"] is True
    assert report["metadata"]["simulated"] is True


def test_symbols_file_and_report_file(tmp_path, true_bin):
    symbols = tmp_path / "nm.txt"
    symbols.write_text("                 U strcpy@GLIBC_2.2.5\n0000000000401136 T main\n")
    report_file = tmp_path / "report.json"

    assert main(["-f", "--no-print", "--symbols", str(symbols), "--report-file", str(report_file), true_bin]) == 0

    report = orjson.loads(report_file.read_bytes())
    assert "dangerous_function:strcpy" in report["assessment"]["contributing_signals"]
    assert report["metadata"]["static_signals_total"] == 2


def test_observe_never_needs_force(tmp_path):
    pkg = tmp_path / "pkg.deb"
    pkg.write_bytes(b"\x00" * 4096)
    assert main(["--observe", "--no-print", str(pkg)]) == 0


def test_tool_failures_exit_2(capsys, tmp_path, true_bin):
    assert main(["-f", "--no-print", str(tmp_path / "missing")]) == 2
    assert "runescan:" in capsys.readouterr().err

    assert main(["--config", str(tmp_path / "missing.yaml"), "-f", true_bin]) == 2
    assert main(["--symbols", str(tmp_path / "missing.txt"), "-f", true_bin]) == 2


def test_config_file_is_applied(tmp_path, true_bin):
    cfg = tmp_path / "runescan.yaml"
    cfg.write_text("runescan:\n  timeline_capacity: 1\n")
    report_file = tmp_path / "report.json"

    assert main(["--config", str(cfg), "-f", "--no-print", "--report-file", str(report_file), true_bin]) == 0
    report = orjson.loads(report_file.read_bytes())
    assert len(report["checkpoints"]) == 1
    assert report["warnings"], "truncation must be reported"


def test_force_after_target_is_honoured(capsys, true_bin):
    assert main([true_bin, "-f", "--no-print"]) == 0
    assert "EXECUTION SAFETY BLOCK" not in capsys.readouterr().err


def test_dashed_target_arguments_after_separator(capsys, make_script):
    target = make_script("echo_args.sh", 'echo "$1|$2"\n')
    assert main(["-f", "--no-print", target, "--", "-x", "two words"]) == 0
    assert "-x|two words" in capsys.readouterr().out


def test_every_command_suggested_on_rejection_works(capsys, true_bin):
    assert main([true_bin]) == 1
    err = capsys.readouterr().err

    suggested = [line.split("#", 1)[0].strip() for line in err.splitlines() if line.strip().startswith("runescan ")]
    assert len(suggested) == 3, err
    for command in suggested:
        argv = shlex.split(command)[1:]
        assert main(argv + ["--no-print"]) == 0, f"suggested command failed: {command}"


def test_checkpoints_file(tmp_path, true_bin):
    path = tmp_path / "checkpoints.json"
    assert main(["-f", "--no-print", "--checkpoints-file", str(path), true_bin]) == 0

    ids = [cp.id for cp in CheckpointSerializer.load(str(path))]
    assert ids[0] == "EXEC:started"
    assert ids[-1] == "EXIT:classified"


def test_symbols_are_read_from_target_by_default(tmp_path, monkeypatch, true_bin):
    monkeypatch.setattr("runescan.cli.read_symbols", lambda path: ["gets@GLIBC_2.2.5"])
    report_file = tmp_path / "report.json"

    assert main(["-f", "--no-print", "--report-file", str(report_file), true_bin]) == 0
    report = orjson.loads(report_file.read_bytes())
    assert "dangerous_function:gets" in report["assessment"]["contributing_signals"]
    assert report["metadata"]["static_signals_total"] == 1


def test_report_file_keys_are_sorted(tmp_path, true_bin):
    report_file = tmp_path / "report.json"
    assert main(["-f", "--no-print", "--report-file", str(report_file), true_bin]) == 0

    report = orjson.loads(report_file.read_bytes())
    assert list(report) == sorted(report)
    assert list(report["metadata"]) == sorted(report["metadata"])
