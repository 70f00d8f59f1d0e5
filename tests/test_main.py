import json
import logging

import pytest

from net_optimize import main as cli


@pytest.fixture(autouse=True)
def _env(monkeypatch, tmp_path):
    monkeypatch.setenv("NET_OPTIMIZE_ROOT", str(tmp_path / "root"))
    monkeypatch.setenv("NET_OPTIMIZE_CONFIG", str(tmp_path / "missing.json"))
    monkeypatch.delenv("NET_OPTIMIZE_LOG_LEVEL", raising=False)
    root = logging.getLogger()
    saved, level = list(root.handlers), root.level
    yield
    for handler in list(root.handlers):
        if handler not in saved:
            root.removeHandler(handler)
            handler.close()
    root.setLevel(level)


def test_non_numeric_mtu_is_usage_error(host):
    with pytest.raises(SystemExit) as exc:
        cli.main(["--mtu", "abc"])
    assert exc.value.code == 2
    assert host.calls == []


def test_apply_requires_root(host, capsys):
    host.root = False
    assert cli.main(["--apply"]) == 1
    assert host.calls == []
    assert "root_required" in capsys.readouterr().err


def test_dry_run_prints_plan_without_root(host, capsys, tmp_path):
    host.root = False
    assert cli.main(["--profile", "latency", "--mtu", "1420"]) == 0
    out = capsys.readouterr().out
    assert out.startswith("[dry-run] profile=latency iface=eth0 mtu=1420")
    assert "+ modprobe tcp_bbr" in out
    assert "+ ip link set dev eth0 mtu 1420" in out
    assert host.calls == []
    assert not (tmp_path / "root").exists()


def test_config_file_sets_defaults_and_cli_wins(host, capsys, monkeypatch, tmp_path):
    conf = tmp_path / "config.json"
    conf.write_text(json.dumps({"profile": "throughput", "mtu": 9000}))
    monkeypatch.setenv("NET_OPTIMIZE_CONFIG", str(conf))

    cli.main([])
    assert "profile=throughput iface=eth0 mtu=9000" in capsys.readouterr().out

    cli.main(["--profile", "latency"])
    assert "profile=latency iface=eth0 mtu=9000" in capsys.readouterr().out


def test_status_json(host, capsys):
    assert cli.main(["--status", "--json"]) == 0
    info = json.loads(capsys.readouterr().out)
    assert info["iface"] == "eth0"
    assert info["congestion_control"] == "cubic"
    assert info["service"]["unit"] == "net-optimize@eth0.service"


def test_status_text(host, capsys):
    assert cli.main(["--status"]) == 0
    out = capsys.readouterr().out
    assert "congestion control" in out
    assert "not installed" in out


def test_revert_without_apply_exits_cleanly(host, capsys, tmp_path):
    assert cli.main(["--revert"]) == 0
    assert "nothing_to_revert" in capsys.readouterr().out
    assert not (tmp_path / "root").exists()


def test_apply_then_revert(host, capsys, tmp_path):
    assert cli.main(["--apply", "--profile", "balanced"]) == 0
    out = capsys.readouterr().out
    assert "apply: profile=balanced iface=eth0 phase=done" in out
    assert (tmp_path / "root/etc/sysctl.d/99-net-optimize.conf").exists()

    assert cli.main(["--revert"]) == 0
    assert not (tmp_path / "root/etc/sysctl.d/99-net-optimize.conf").exists()


def test_missing_iface_reports_error(host, capsys):
    assert cli.main(["--iface", "eth9"]) == 1
    assert "interface_not_found:eth9" in capsys.readouterr().err


def test_install_and_remove_service(host, capsys, tmp_path):
    assert cli.main(["--install-service", "--profile", "latency"]) == 0
    unit = tmp_path / "root/etc/systemd/system/net-optimize@eth0.service"
    assert "--profile latency" in unit.read_text()

    assert cli.main(["--remove-service"]) == 0
    assert not unit.exists()
    assert "removed net-optimize@eth0.service" in capsys.readouterr().out


def test_unwritable_log_file_does_not_break_dry_run(host, capsys, tmp_path):
    (tmp_path / "root/var/log/net-optimize.log").mkdir(parents=True)
    host.root = False
    host.modules.discard("tcp_bbr")

    assert cli.main(["--profile", "balanced"]) == 0
    captured = capsys.readouterr()
    assert "[WARN] bbr_unavailable:fallback=cubic" in captured.err
    assert "log_file_unavailable" in captured.err
    assert captured.out.startswith("[dry-run] profile=balanced")


def test_unwritable_log_file_keeps_root_error_exit_code(host, capsys, tmp_path):
    (tmp_path / "root/var/log/net-optimize.log").mkdir(parents=True)
    host.root = False
    assert cli.main(["--apply"]) == 1
    assert "root_required:apply" in capsys.readouterr().err


def test_verbose_noop_revert_creates_no_file(host, capsys, tmp_path):
    assert cli.main(["--revert", "-v"]) == 0
    assert "nothing_to_revert" in capsys.readouterr().out
    assert not (tmp_path / "root").exists()


def test_install_service_with_unknown_config_profile(host, capsys, monkeypatch, tmp_path):
    conf = tmp_path / "config.json"
    conf.write_text(json.dumps({"profile": "fast"}))
    monkeypatch.setenv("NET_OPTIMIZE_CONFIG", str(conf))

    assert cli.main(["--install-service"]) == 0
    unit = tmp_path / "root/etc/systemd/system/net-optimize@eth0.service"
    assert "--profile balanced" in unit.read_text()
    assert "--profile fast" not in unit.read_text()
    assert "unknown_profile:fast:using=balanced" in capsys.readouterr().err
