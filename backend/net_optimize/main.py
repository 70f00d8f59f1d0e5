import argparse
import json
import logging
import sys
from dataclasses import replace
from pathlib import Path
from typing import Any, Dict, List, Optional

from net_optimize import __version__, engine, probe, profiles, service, system
from net_optimize.config import OFFLOAD_MODES, RunConfig, build_run_config, load_config
from net_optimize.engine import RunReport
from net_optimize.errors import NetOptimizeError, PrivilegeError
from net_optimize.logging import setup_logging

log = logging.getLogger("net_optimize.main")


def _mtu_arg(value: str) -> int:
    try:
        return int(value, 10)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid MTU: {value!r}")


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="net-optimize",
        description="Apply, inspect or revert Linux network-stack tuning. "
                    "Without an action, prints what --apply would change.",
    )
    actions = ap.add_mutually_exclusive_group()
    actions.add_argument("--status", dest="action", action="store_const", const="status")
    actions.add_argument("--apply", dest="action", action="store_const", const="apply")
    actions.add_argument("--revert", dest="action", action="store_const", const="revert")
    actions.add_argument("--install-service", dest="action", action="store_const", const="install-service")
    actions.add_argument("--remove-service", dest="action", action="store_const", const="remove-service")
    ap.set_defaults(action="dry-run")

    ap.add_argument("--profile", choices=sorted(profiles.PROFILES), default=None)
    ap.add_argument("--iface", default=None, help="default: interface of the default route")
    ap.add_argument("--mtu", type=_mtu_arg, default=None, help="default: leave MTU unchanged")
    ap.add_argument("--offloads", choices=OFFLOAD_MODES, default=None)
    ap.add_argument("--irq-affinity", dest="irq_affinity", default=None, metavar="auto|CPULIST")
    ap.add_argument("--no-coalescing", dest="coalescing", action="store_const", const=False, default=None)
    ap.add_argument("--config", default=None, help="JSON config file")
    ap.add_argument("--json", dest="json_output", action="store_const", const=True, default=None)
    ap.add_argument("-v", "--verbose", action="store_const", const=True, default=None)
    ap.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return ap


def _emit_json(payload: Dict[str, Any]) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True))


def _print_lines(title: str, items: List[str]) -> None:
    if not items:
        return
    print(f"{title}:")
    for item in items:
        print(f"  {item}")


def _print_plan(cfg: RunConfig, report: RunReport) -> None:
    mtu = cfg.mtu if cfg.mtu is not None else "keep"
    print(f"[dry-run] profile={report.profile} iface={report.iface} mtu={mtu}")
    if not report.planned:
        print("[dry-run] nothing to change")
    for line in report.planned:
        print(f"+ {line}")
    for path in report.files_written:
        print(f"+ write {path}")
    _print_lines("warnings", report.warnings)


def _print_report(report: RunReport) -> None:
    print(f"{report.action}: profile={report.profile} iface={report.iface or '-'} phase={report.phase}")
    if report.backup:
        print(f"backup: {report.backup}")
    for line in report.executed:
        print(f"+ {line}")
    _print_lines("files written", report.files_written)
    _print_lines("files removed", report.files_removed)
    _print_lines("failed", report.failed)
    _print_lines("verify mismatches", report.mismatches)
    _print_lines("warnings", report.warnings)
    _print_lines("notes", report.notes)


def _fmt(value: Any) -> str:
    if value is None:
        return "unknown"
    if isinstance(value, bool):
        return "yes" if value else "no"
    if isinstance(value, list):
        return " ".join(str(v) for v in value) or "-"
    if isinstance(value, dict):
        return ", ".join(f"{k}={_fmt(v)}" for k, v in value.items()) or "-"
    return str(value)


def _print_status(info: Dict[str, Any]) -> None:
    svc = info.get("service") or {}
    rows = [
        ("interface", f"{info.get('iface')} ({info.get('iface_source')})"),
        ("default qdisc", _fmt(info.get("default_qdisc"))),
        ("root qdisc", _fmt(info.get("root_qdisc"))),
        ("congestion control", _fmt(info.get("congestion_control"))),
        ("available cc", _fmt(info.get("available_congestion_control"))),
        ("bbr / cake", f"{_fmt(info.get('bbr_supported'))} / {_fmt(info.get('cake_supported'))}"),
        ("mtu", _fmt(info.get("mtu"))),
        ("offloads", _fmt(info.get("offloads"))),
        ("coalescing", _fmt(info.get("coalescing"))),
        ("sysctl file", _fmt(info.get("sysctl_file")) if info.get("sysctl_file") else "not installed"),
        ("last backup", f"{info['last_backup']} (profile={info.get('last_backup_profile') or '?'})"
                    if info.get("last_backup") else "none"),
        ("service", f"{svc.get('unit')} installed={_fmt(svc.get('installed'))} "
                    f"enabled={_fmt(svc.get('enabled'))} active={_fmt(svc.get('active'))}"),
    ]
    width = max(len(k) for k, _v in rows)
    for key, value in rows:
        print(f"{key.ljust(width)} : {value}")


def _install_service(cfg: RunConfig) -> int:
    iface, _source = probe.detect_iface(cfg)
    if profiles.get_profile(cfg.profile) is None:
        log.warning(
            "unknown_profile:%s:using=%s", cfg.profile, service.unit_profile(cfg), extra={"action": cfg.action},
        )
    if cfg.mtu is not None:
        err = profiles.validate_mtu(cfg.mtu)
        if err is not None:
            log.warning("%s", err, extra={"action": cfg.action})
            cfg = replace(cfg, mtu=None)
    path = service.install(cfg, iface)
    print(f"installed {path} ({cfg.unit_name(iface)} enabled)")
    return 0


def _remove_service(cfg: RunConfig) -> int:
    iface = cfg.iface
    if not iface:
        iface, _source = probe.detect_iface(cfg)
    if service.remove(cfg, iface):
        print(f"removed {cfg.unit_name(iface)}")
    else:
        print(f"{cfg.unit_name(iface)} not installed")
    return 0


def run(cfg: RunConfig) -> int:
    if cfg.mutating and not system.is_root():
        raise PrivilegeError("root_required", cfg.action)

    if cfg.action == "status":
        info = engine.status(cfg)
        if cfg.json_output:
            _emit_json(info)
        else:
            _print_status(info)
        return 0

    if cfg.action == "install-service":
        return _install_service(cfg)
    if cfg.action == "remove-service":
        return _remove_service(cfg)

    if cfg.action == "apply":
        report = engine.apply(cfg)
    elif cfg.action == "revert":
        report = engine.revert(cfg)
    else:
        report = engine.dry_run(cfg)

    if cfg.json_output:
        _emit_json(report.to_dict())
    elif cfg.action == "dry-run":
        _print_plan(cfg, report)
    else:
        _print_report(report)
        if cfg.action == "apply":
            print()
            _print_status(engine.status(cfg.with_iface(report.iface)))
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    file_cfg = load_config(Path(args.config) if args.config else None)
    cfg = build_run_config(
        args.action,
        {
            "profile": args.profile,
            "iface": args.iface,
            "mtu": args.mtu,
            "offloads": args.offloads,
            "irq_affinity": args.irq_affinity,
            "coalescing": args.coalescing,
            "json_output": args.json_output,
            "verbose": args.verbose,
        },
        file_cfg=file_cfg,
    )
    setup_logging(cfg.paths.log_file, verbose=cfg.verbose)
    log.debug("start:action=%s profile=%s iface=%s", cfg.action, cfg.profile, cfg.iface or "auto")

    try:
        return run(cfg)
    except NetOptimizeError as exc:
        log.error("%s", exc, extra={"action": cfg.action})
        return 1


if __name__ == "__main__":
    sys.exit(main())
