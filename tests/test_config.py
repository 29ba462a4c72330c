import logging

import pytest

from runescan.config import FALLBACK_DEFAULTS, ScanConfig, load_config


def test_no_path_gives_defaults():
    cfg = load_config(None)
    assert cfg == ScanConfig()
    assert cfg.timeline_capacity == 1024
    assert cfg.max_args == 256
    assert cfg.to_dict() == FALLBACK_DEFAULTS


def test_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_config(tmp_path / "nope.yaml")


def test_section_overrides_and_fills_defaults(tmp_path, caplog):
    caplog.set_level(logging.WARNING, logger="runescan.config")
    path = tmp_path / "runescan.yaml"
    path.write_text(
        "runescan:\n"
        "  timeline_capacity: 16\n"
        "  passthrough: false\n"
        "  bogus_key: 1\n"
    )

    cfg = load_config(path)
    assert cfg.timeline_capacity == 16
    assert cfg.passthrough is False
    assert cfg.read_timeout == ScanConfig().read_timeout, "unset keys come from defaults"
    assert any("bogus_key" in r.getMessage() for r in caplog.records)


@pytest.mark.parametrize("content", ["", "other_tool:\n  x: 1\n", "runescan:\n"])
def test_missing_section_falls_back(tmp_path, content):
    path = tmp_path / "cfg.yaml"
    path.write_text(content)
    assert load_config(str(path)) == ScanConfig()
