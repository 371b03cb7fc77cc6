import io
import sys

import pytest

import main as recorder
from config import AppConfig, BrokerConfig
from domain.errors import ConfigError


def test_no_positionals_keeps_config():
    args = recorder.parse_args([])
    cfg = AppConfig(broker=BrokerConfig(hostname="h"))
    assert recorder.apply_cli(cfg, args) is cfg


def test_three_positionals_override_recorder():
    args = recorder.parse_args(["/devices/+/latency/report", "1", "out.csv", "--force"])
    cfg = recorder.apply_cli(AppConfig(broker=BrokerConfig(hostname="h")), args)

    assert cfg.recorder.subscribe_topic == "/devices/+/latency/report"
    assert cfg.recorder.qos == 1
    assert cfg.recorder.output_path == "out.csv"
    assert args.force


@pytest.mark.parametrize("argv", [["only-topic"], ["a", "1"], ["a", "1", "b", "c"]])
def test_wrong_positional_count_exits(argv):
    with pytest.raises(SystemExit) as exc:
        recorder.parse_args(argv)
    assert exc.value.code == 2


def test_invalid_qos_is_config_error():
    args = recorder.parse_args(["t", "7", "out.csv"])
    with pytest.raises(ConfigError):
        recorder.apply_cli(AppConfig(broker=BrokerConfig(hostname="h")), args)


def test_directory_output_rejected(tmp_path):
    with pytest.raises(ConfigError):
        recorder.resolve_output(str(tmp_path), force=True, confirm_existing=True, interactive=True)


def test_new_file_is_fine(tmp_path):
    out = str(tmp_path / "new.csv")
    assert recorder.resolve_output(out, force=False, confirm_existing=True, interactive=False) == out


def test_existing_file_needs_force_when_not_interactive(tmp_path):
    out = tmp_path / "old.csv"
    out.write_text("x")
    with pytest.raises(ConfigError):
        recorder.resolve_output(str(out), force=False, confirm_existing=True, interactive=False)
    assert recorder.resolve_output(str(out), force=True, confirm_existing=True, interactive=False) == str(out)


def test_existing_default_output_is_not_questioned(tmp_path):
    out = tmp_path / "latency_aggregation.csv"
    out.write_text("x")
    assert recorder.resolve_output(str(out), force=False, confirm_existing=False, interactive=False) == str(out)


def test_prompt_yes_overwrites(tmp_path):
    out = tmp_path / "old.csv"
    out.write_text("x")
    answers = iter(["", "maybe", "Y"])
    path = recorder.resolve_output(
        str(out), force=False, confirm_existing=True, interactive=True, ask=lambda _p: next(answers)
    )
    assert path == str(out)


def test_prompt_no_aborts(tmp_path):
    out = tmp_path / "old.csv"
    out.write_text("x")
    with pytest.raises(recorder.Abort):
        recorder.resolve_output(str(out), force=False, confirm_existing=True, interactive=True, ask=lambda _p: "n")


def test_main_exits_1_on_bad_qos(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(sys, "stdin", io.StringIO(""))
    assert recorder.main(["t", "x", "out.csv"]) == 1


def test_main_exits_1_on_directory(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(sys, "stdin", io.StringIO(""))
    (tmp_path / "outdir").mkdir()
    assert recorder.main(["t", "0", "outdir"]) == 1


def test_main_exits_0_when_user_declines(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    (tmp_path / "old.csv").write_text("x")

    class Tty(io.StringIO):
        def isatty(self):
            return True

    monkeypatch.setattr(sys, "stdin", Tty("n\n"))
    assert recorder.main(["t", "0", "old.csv"]) == 0
    assert (tmp_path / "old.csv").read_text() == "x"


def test_default_config_when_file_missing(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    cfg = recorder.load_app_config(None)
    assert cfg.broker.hostname == "localhost"
    assert cfg.recorder.client_id == "latency-report-client"


def test_main_refuses_subscription_that_catches_acks(tmp_path, monkeypatch, capsys):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(sys, "stdin", io.StringIO(""))
    (tmp_path / "config.yaml").write_text(
        "broker: {hostname: h}\n"
        "topics: {report: '{device_id}/latency', reply: '{device_id}/latency'}\n"
        "recorder: {subscribe_topic: '+/latency'}\n",
        encoding="utf-8",
    )
    assert recorder.main([]) == 1
    assert "reply topic" in capsys.readouterr().err


def test_check_topics_accepts_defaults():
    recorder.check_topics(AppConfig(broker=BrokerConfig(hostname="h")))


def test_missing_parent_directory_rejected(tmp_path):
    with pytest.raises(ConfigError, match="does not exist"):
        recorder.resolve_output(str(tmp_path / "nope" / "out.csv"), force=True, confirm_existing=True, interactive=False)


def test_main_exits_1_when_output_parent_missing(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(sys, "stdin", io.StringIO(""))
    assert recorder.main(["+/latency/report", "0", str(tmp_path / "nope" / "out.csv")]) == 1
