from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from net_optimize import probe as probe_mod
from net_optimize import profiles, service, state, system
from net_optimize.config import RunConfig
from net_optimize.errors import DetectionError, MutationFailure, NetOptimizeError
from net_optimize.probe import ProbeResult
from net_optimize.profiles import Resolution, Setting

log = logging.getLogger("net_optimize.engine")

STATUS_SYSCTL_KEYS = ("net.core.default_qdisc", "net.ipv4.tcp_congestion_control")


@dataclass(frozen=True)
class Change:
    setting: Setting
    current: Optional[str]

    @property
    def key(self) -> str:
        return self.setting.key

    @property
    def line(self) -> str:
        return self.setting.describe()


@dataclass(frozen=True)
class Plan:
    resolution: Resolution
    changes: Tuple[Change, ...]
    sysctl_conf: str
    modules_conf: str

    def lines(self) -> List[str]:
        return [c.line for c in self.changes]

    def keys(self) -> List[str]:
        return [c.key for c in self.changes]


@dataclass
class RunReport:
    action: str
    profile: str
    iface: Optional[str] = None
    phase: str = "idle"
    planned: List[str] = field(default_factory=list)
    executed: List[str] = field(default_factory=list)
    mutated: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    mismatches: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    notes: List[str] = field(default_factory=list)
    files_written: List[str] = field(default_factory=list)
    files_removed: List[str] = field(default_factory=list)
    backup: Optional[str] = None
    error: Optional[str] = None
    started_ts: float = field(default_factory=time.time)

    def enter(self, phase: str) -> None:
        self.phase = phase
        log.debug("phase:%s", phase, extra={"action": self.action, "phase": phase})

    def warn(self, err: NetOptimizeError) -> None:
        self.warnings.append(str(err))
        log.warning("%s", err, extra={"action": self.action, "phase": self.phase})

    def fail(self, err: NetOptimizeError) -> None:
        # the caller logs the error once it reaches the top level
        log.debug("failed_in:%s", self.phase, extra={"action": self.action, "phase": self.phase})
        self.error = str(err)
        self.enter("failed")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action,
            "profile": self.profile,
            "iface": self.iface,
            "phase": self.phase,
            "planned": list(self.planned),
            "executed": list(self.executed),
            "mutated": list(self.mutated),
            "failed": list(self.failed),
            "mismatches": list(self.mismatches),
            "warnings": list(self.warnings),
            "notes": list(self.notes),
            "files_written": list(self.files_written),
            "files_removed": list(self.files_removed),
            "backup": self.backup,
            "error": self.error,
            "duration_s": round(time.time() - self.started_ts, 3),
        }


# --- plan (pure) ------------------------------------------------------------

def _same(setting: Setting, observed: Optional[str]) -> bool:
    if observed is None:
        return False
    if setting.category == "irq":
        return system.normalize_mask(observed) == system.normalize_mask(setting.value)
    return system.normalize_value(observed) == system.normalize_value(setting.value)


def render_sysctl_conf(resolution: Resolution) -> str:
    lines = [
        "# Managed by net-optimize; overwritten on every apply, do not edit.",
        f"# profile={resolution.profile}",
    ]
    values: Dict[str, str] = {}
    for setting in resolution.of("sysctl"):
        values[setting.key] = setting.value
    lines.extend(f"{k} = {v}" for k, v in values.items())
    return "\n".join(lines) + "\n"


def render_modules_conf(resolution: Resolution) -> str:
    modules = list(dict.fromkeys(s.param for s in resolution.of("module")))
    if not modules:
        return ""
    return "# Managed by net-optimize\n" + "\n".join(modules) + "\n"


def build_plan(resolution: Resolution, observed: ProbeResult) -> Plan:
    """
    Keep the settings whose observed value differs from the target (unknown
    counts as different). Shared by dry-run and apply.
    """
    changes = tuple(
        Change(setting=s, current=observed.current(s))
        for s in resolution.settings
        if not _same(s, observed.current(s))
    )
    return Plan(
        resolution=resolution,
        changes=changes,
        sysctl_conf=render_sysctl_conf(resolution),
        modules_conf=render_modules_conf(resolution),
    )


def _probe_and_plan(cfg: RunConfig, report: RunReport) -> Tuple[ProbeResult, Plan]:
    report.enter("probing")
    observed = probe_mod.probe(cfg, profiles.sysctl_keys(cfg.profile))
    report.iface = observed.iface
    resolution = profiles.resolve(
        cfg.profile,
        observed,
        mtu=cfg.mtu,
        offloads=cfg.offloads,
        coalescing=cfg.coalescing,
        irq_affinity=cfg.irq_affinity,
    )
    report.profile = resolution.profile
    for notice in resolution.notices:
        report.warn(notice)
    plan = build_plan(resolution, observed)
    report.planned = plan.lines()
    return observed, plan


# --- execute ------------------------------------------------------------------

_MUTATORS: Dict[str, Callable[[Setting], Tuple[bool, str]]] = {
    "module": lambda s: system.load_module(s.param),
    "sysctl": lambda s: system.write_sysctl(s.key, s.value),
    "qdisc": lambda s: system.set_root_qdisc(s.target, s.value),
    "link": lambda s: system.set_mtu(s.target, int(s.value)),
    "offload": lambda s: system.set_offload(s.target, s.param, s.value),
    "coalesce": lambda s: system.set_coalescing(s.target, s.param, s.value),
    "irq": lambda s: system.write_irq_affinity(int(s.target), s.value),
}


def _persist_modules(cfg: RunConfig, plan: Plan, report: RunReport) -> None:
    path = cfg.paths.modules_file
    if plan.modules_conf:
        state.write_owned_file(path, plan.modules_conf)
        report.files_written.append(str(path))
    elif state.remove_owned_file(path):
        report.files_removed.append(str(path))


def _persist_sysctl(cfg: RunConfig, plan: Plan, report: RunReport) -> None:
    path = cfg.paths.sysctl_file
    state.write_owned_file(path, plan.sysctl_conf)
    report.files_written.append(str(path))


def _execute(cfg: RunConfig, plan: Plan, report: RunReport) -> None:
    required = {s.requires for s in plan.resolution.settings if s.requires}
    by_category: Dict[str, List[Change]] = {}
    for change in plan.changes:
        by_category.setdefault(change.setting.category, []).append(change)

    for category in profiles.CATEGORIES:
        if category == "sysctl":
            _persist_sysctl(cfg, plan, report)
        for change in by_category.get(category, []):
            setting = change.setting
            log.info("+ %s", change.line, extra={"action": report.action, "key": setting.key})
            report.executed.append(change.line)
            ok, out = _MUTATORS[category](setting)
            if ok:
                report.mutated.append(setting.key)
                continue
            report.failed.append(setting.key)
            err = MutationFailure(f"{category}_set_failed", f"{setting.key}:{out[:120]}")
            if setting.key in required:
                # later settings depend on it: abort the run
                raise MutationFailure(err.code, err.detail, fatal=True)
            report.warn(err)
        if category == "module":
            _persist_modules(cfg, plan, report)


def _verify(cfg: RunConfig, plan: Plan, report: RunReport) -> None:
    mutated = set(report.mutated)
    if not mutated:
        return
    try:
        after = probe_mod.probe(cfg.with_iface(report.iface), profiles.sysctl_keys(cfg.profile))
    except DetectionError as exc:
        report.warn(MutationFailure("verify_probe_failed", str(exc)))
        return
    for change in plan.changes:
        if change.key not in mutated:
            continue
        actual = after.current(change.setting)
        if _same(change.setting, actual):
            continue
        mismatch = f"{change.key}:expected={change.setting.value}:actual={actual}"
        report.mismatches.append(mismatch)
        log.warning("verify_mismatch:%s", mismatch, extra={"action": report.action, "key": change.key})


# --- actions ----------------------------------------------------------------

def dry_run(cfg: RunConfig) -> RunReport:
    """Everything apply would do, computed the same way, with no mutation."""
    report = RunReport(action="dry-run", profile=cfg.profile)
    try:
        _observed, plan = _probe_and_plan(cfg, report)
    except NetOptimizeError as exc:
        report.fail(exc)
        raise
    report.files_written = [str(cfg.paths.sysctl_file)]
    if plan.modules_conf:
        report.files_written.insert(0, str(cfg.paths.modules_file))
    report.enter("done")
    return report


def apply(cfg: RunConfig) -> RunReport:
    report = RunReport(action="apply", profile=cfg.profile)
    try:
        _observed, plan = _probe_and_plan(cfg, report)

        report.enter("backing_up")
        backup = state.write_backup(
            cfg.paths.state_dir,
            {c.key: c.current for c in plan.changes},
            profile=report.profile,
            iface=report.iface or "",
        )
        report.backup = str(backup)
        log.info("backup_written:%s", backup, extra={"action": "apply", "path": str(backup)})

        report.enter("mutating")
        _execute(cfg, plan, report)

        report.enter("verifying")
        _verify(cfg, plan, report)
    except NetOptimizeError as exc:
        report.fail(exc)
        raise

    report.enter("done")
    log.info(
        "apply_done:mutated=%d failed=%d mismatches=%d",
        len(report.mutated), len(report.failed), len(report.mismatches),
        extra={"action": "apply", "profile": report.profile, "iface": report.iface},
    )
    return report


def revert(cfg: RunConfig) -> RunReport:
    """
    Remove the owned config fragments and reload the remaining system
    configuration. The backup snapshot is not replayed; NIC offload,
    coalescing, IRQ affinity and the live root qdisc keep their current
    values. Safe to call when nothing was applied.
    """
    report = RunReport(action="revert", profile=cfg.profile, iface=cfg.iface)
    report.enter("reverting")
    try:
        for path in (cfg.paths.sysctl_file, cfg.paths.modules_file):
            if state.remove_owned_file(path):
                report.files_removed.append(str(path))

        if report.files_removed:
            ok, out = system.reload_sysctl()
            if not ok:
                report.warn(MutationFailure("sysctl_reload_failed", out[:120]))
            report.notes.append("nic_offload_coalescing_irq_not_restored")
            latest = state.latest_backup(cfg.paths.state_dir)
            if latest is not None:
                report.backup = str(latest)
                report.notes.append(f"snapshot_available:{latest}")

        for iface in service.installed_ifaces(cfg):
            if cfg.iface and iface != cfg.iface:
                continue
            if system.unit_enabled(cfg.unit_name(iface)):
                if service.disable(cfg, iface):
                    report.notes.append(f"service_disabled:{cfg.unit_name(iface)}")
                else:
                    report.warn(MutationFailure("service_disable_failed", cfg.unit_name(iface)))
    except NetOptimizeError as exc:
        report.fail(exc)
        raise

    if not report.files_removed and not report.notes:
        report.notes.append("nothing_to_revert")
    report.enter("done")
    log.info("revert_done:removed=%d", len(report.files_removed), extra={"action": "revert"})
    return report


def status(cfg: RunConfig) -> Dict[str, Any]:
    """Pure read of the current tuning state."""
    observed = probe_mod.probe(cfg, STATUS_SYSCTL_KEYS)
    offloads = {k: v[0] for k, v in (observed.offloads or {}).items()}
    latest = state.latest_backup(cfg.paths.state_dir)
    return {
        "iface": observed.iface,
        "iface_source": observed.iface_source,
        "default_qdisc": observed.sysctl.get("net.core.default_qdisc"),
        "root_qdisc": observed.qdisc,
        "congestion_control": observed.sysctl.get("net.ipv4.tcp_congestion_control"),
        "available_congestion_control": observed.congestion_controls,
        "bbr_supported": observed.bbr,
        "cake_supported": observed.cake,
        "mtu": observed.mtu,
        "offloads": offloads if observed.offloads is not None else None,
        "coalescing": observed.coalescing,
        "irq_affinity": {str(k): v for k, v in observed.irq_affinity.items()},
        "sysctl_file": str(cfg.paths.sysctl_file) if cfg.paths.sysctl_file.exists() else None,
        "last_backup": str(latest) if latest else None,
        "last_backup_profile": state.load_backup(latest).get("profile") if latest else None,
        "service": service.unit_state(cfg, observed.iface),
    }
