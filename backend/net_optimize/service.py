from __future__ import annotations

import logging
import os
import sys
from pathlib import Path
from typing import Dict, List, Optional

import net_optimize
from net_optimize import profiles, state, system
from net_optimize.config import RunConfig
from net_optimize.errors import MutationFailure

log = logging.getLogger("net_optimize.service")

UNIT_PREFIX = "net-optimize@"

_UNIT_TEMPLATE = """\
[Unit]
Description=Network optimize for %I
After=network-online.target
Wants=network-online.target

[Service]
Type=oneshot
RemainAfterExit=yes
ExecStart={exec_start}

[Install]
WantedBy=multi-user.target
"""

_LAUNCHER_TEMPLATE = """\
#!{python}
import sys

sys.path.insert(0, {lib_dir!r})

from net_optimize.main import main

if __name__ == "__main__":
    sys.exit(main())
"""


def unit_profile(cfg: RunConfig) -> str:
    """Profile name as the boot command line must spell it."""
    profile = profiles.get_profile(cfg.profile) or profiles.PROFILES[profiles.DEFAULT_PROFILE]
    return profile.name


def render_unit(cfg: RunConfig) -> str:
    args = [str(cfg.paths.bin_path), "--apply", "--profile", unit_profile(cfg), "--iface", "%I"]
    if cfg.mtu is not None:
        args += ["--mtu", str(cfg.mtu)]
    if cfg.offloads != "profile":
        args += ["--offloads", cfg.offloads]
    if cfg.irq_affinity:
        args += ["--irq-affinity", cfg.irq_affinity]
    return _UNIT_TEMPLATE.format(exec_start=" ".join(args))


_SYSTEM_PYTHONS = ("/usr/bin/python3", "/usr/local/bin/python3")


def boot_python() -> str:
    # a venv interpreter may not survive a reboot
    for cand in _SYSTEM_PYTHONS:
        if os.access(cand, os.X_OK):
            return cand
    return sys.executable


def render_launcher(cfg: RunConfig, python: Optional[str] = None) -> str:
    return _LAUNCHER_TEMPLATE.format(python=python or boot_python(), lib_dir=str(cfg.paths.lib_dir))


def _running_from(path: Path) -> bool:
    try:
        return Path(sys.argv[0]).resolve() == path.resolve()
    except (OSError, IndexError):
        return False


def ensure_launcher(cfg: RunConfig) -> Path:
    """
    Copy the running package to ``lib_dir`` and write a launcher at
    ``bin_path`` that imports only that copy, so the boot unit keeps working
    after the checkout or venv this invocation came from is gone.
    """
    bin_path = cfg.paths.bin_path
    if _running_from(bin_path):
        return bin_path
    package_dir = Path(net_optimize.__file__).resolve().parent
    target = cfg.paths.lib_dir / "net_optimize"
    if package_dir != target.resolve():
        state.copy_owned_tree(package_dir, target)
        log.info("package_copied:%s", target)
    state.write_owned_file(bin_path, render_launcher(cfg), mode=0o755)
    log.info("launcher_written:%s", bin_path)
    return bin_path


def installed_ifaces(cfg: RunConfig) -> List[str]:
    unit_dir = cfg.paths.unit_dir
    if not unit_dir.is_dir():
        return []
    out: List[str] = []
    for path in sorted(unit_dir.glob(f"{UNIT_PREFIX}*.service")):
        iface = path.name[len(UNIT_PREFIX):-len(".service")]
        if iface:
            out.append(iface)
    return out


def unit_state(cfg: RunConfig, iface: str) -> Dict[str, object]:
    unit = cfg.unit_name(iface)
    path = cfg.unit_path(iface)
    return {
        "unit": unit,
        "path": str(path),
        "installed": path.exists(),
        "enabled": system.unit_enabled(unit),
        "active": system.unit_active(unit),
    }


def install(cfg: RunConfig, iface: str) -> Path:
    """
    Write and enable the per-interface boot unit. Re-installing rewrites the
    same content.
    """
    ensure_launcher(cfg)
    path = cfg.unit_path(iface)
    state.write_owned_file(path, render_unit(cfg))
    log.info("unit_written:%s", path)

    ok, out = system.systemctl("daemon-reload")
    if not ok:
        log.warning("daemon_reload_failed:%s", out[:120])
    ok, out = system.systemctl("enable", "--now", cfg.unit_name(iface))
    if not ok:
        raise MutationFailure("service_enable_failed", f"{cfg.unit_name(iface)}:{out[:120]}", fatal=True)
    return path


def disable(cfg: RunConfig, iface: str) -> bool:
    unit = cfg.unit_name(iface)
    ok, out = system.systemctl("disable", "--now", unit)
    if not ok:
        log.warning("service_disable_failed:%s:%s", unit, out[:120])
    return ok


def remove(cfg: RunConfig, iface: str) -> bool:
    """
    Disable and delete the unit. Returns False (and touches nothing) when no
    unit is installed for the interface.
    """
    path = cfg.unit_path(iface)
    if not path.exists():
        return False
    disable(cfg, iface)
    state.remove_owned_file(path)
    ok, out = system.systemctl("daemon-reload")
    if not ok:
        log.warning("daemon_reload_failed:%s", out[:120])
    log.info("unit_removed:%s", path)
    return True

