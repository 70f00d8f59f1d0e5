from __future__ import annotations

import os
import re
import shutil
import subprocess
from pathlib import Path
from typing import Dict, List, Optional, Tuple

# ethtool -k prints long feature names, ethtool -K takes the short ones.
OFFLOAD_FEATURES: Dict[str, str] = {
    "gro": "generic-receive-offload",
    "gso": "generic-segmentation-offload",
    "tso": "tcp-segmentation-offload",
    "lro": "large-receive-offload",
}

COALESCE_PARAMS = ("rx-usecs", "tx-usecs", "adaptive-rx", "adaptive-tx")

_ADAPTIVE_RE = re.compile(r"^Adaptive\s+RX:\s*(\S+)\s+TX:\s*(\S+)", re.IGNORECASE)
_OFFLOAD_RE = re.compile(r"^\s*([a-z0-9-]+):\s*(on|off)(\s*\[fixed\])?", re.IGNORECASE)


def _run(cmd: List[str], timeout_s: float = 3.0) -> Tuple[int, str]:
    try:
        p = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout_s)
        out = (p.stdout or "") + ("\n" + p.stderr if p.stderr else "")
        return p.returncode, out.strip()
    except subprocess.TimeoutExpired as exc:
        out = (exc.stdout or "") if isinstance(exc.stdout, str) else ""
        err = (exc.stderr or "") if isinstance(exc.stderr, str) else ""
        return 124, (out + "\n" + err).strip()
    except Exception as exc:
        return 127, f"{type(exc).__name__}: {exc}"


def _ok(cmd: List[str], timeout_s: float = 3.0) -> Tuple[bool, str]:
    rc, out = _run(cmd, timeout_s=timeout_s)
    return rc == 0, out


def _bin(name: str) -> Optional[str]:
    found = shutil.which(name)
    if found:
        return found
    for d in ("/usr/sbin", "/sbin"):
        cand = os.path.join(d, name)
        if os.path.exists(cand):
            return cand
    return None


def is_root() -> bool:
    return os.geteuid() == 0


def cpu_count() -> int:
    return os.cpu_count() or 1


# --- interfaces -------------------------------------------------------------

def default_route_iface() -> Optional[str]:
    ip = _bin("ip")
    if not ip:
        return None
    rc, out = _run([ip, "-o", "route", "show", "default"])
    if rc != 0:
        return None
    for raw in out.splitlines():
        parts = raw.strip().split()
        if "dev" in parts:
            idx = parts.index("dev")
            if idx + 1 < len(parts):
                return parts[idx + 1]
    return None


def iface_exists(ifname: str) -> bool:
    return (Path("/sys/class/net") / ifname).exists()


def get_mtu(ifname: str) -> Optional[int]:
    try:
        return int((Path("/sys/class/net") / ifname / "mtu").read_text().strip())
    except Exception:
        return None


def set_mtu(ifname: str, mtu: int) -> Tuple[bool, str]:
    ip = _bin("ip")
    if not ip:
        return False, "ip_not_found"
    return _ok([ip, "link", "set", "dev", ifname, "mtu", str(mtu)])


# --- sysctl -----------------------------------------------------------------

def _sysctl_path(key: str) -> Path:
    return Path("/proc/sys") / Path(key.replace(".", "/"))


def normalize_value(value: object) -> str:
    # /proc/sys separates vector values with tabs; config files use spaces.
    return " ".join(str(value).split())


def read_sysctl(key: str) -> Optional[str]:
    path = _sysctl_path(key)
    if not path.exists():
        return None
    try:
        return normalize_value(path.read_text(errors="ignore"))
    except Exception:
        return None


def write_sysctl(key: str, value: str) -> Tuple[bool, str]:
    path = _sysctl_path(key)
    if not path.exists():
        return False, "sysctl_key_missing"
    try:
        path.write_text(normalize_value(value) + "\n")
        return True, ""
    except Exception as exc:
        return False, f"{type(exc).__name__}: {exc}"


def reload_sysctl() -> Tuple[bool, str]:
    sysctl = _bin("sysctl")
    if not sysctl:
        return False, "sysctl_not_found"
    return _ok([sysctl, "--system"], timeout_s=10.0)


def available_congestion_controls() -> Optional[List[str]]:
    raw = read_sysctl("net.ipv4.tcp_available_congestion_control")
    if raw is None:
        return None
    return [s for s in raw.split() if s]


# --- kernel modules ---------------------------------------------------------

def module_loaded(name: str) -> bool:
    return (Path("/sys/module") / name).exists()


def module_available(name: str) -> Optional[bool]:
    """modprobe dry-run; None when modprobe itself is unavailable."""
    modprobe = _bin("modprobe")
    if not modprobe:
        return None
    rc, _out = _run([modprobe, "-n", "-v", name])
    if rc in (124, 127):
        return None
    return rc == 0


def load_module(name: str) -> Tuple[bool, str]:
    modprobe = _bin("modprobe")
    if not modprobe:
        return False, "modprobe_not_found"
    return _ok([modprobe, name], timeout_s=10.0)


# --- qdisc ------------------------------------------------------------------

def parse_root_qdisc(text: str) -> Optional[str]:
    for raw in text.splitlines():
        parts = raw.strip().split()
        if len(parts) >= 2 and parts[0] == "qdisc" and "root" in parts:
            return parts[1]
    return None


def get_root_qdisc(ifname: str) -> Optional[str]:
    tc = _bin("tc")
    if not tc:
        return None
    rc, out = _run([tc, "qdisc", "show", "dev", ifname, "root"])
    if rc != 0:
        return None
    return parse_root_qdisc(out)


def set_root_qdisc(ifname: str, kind: str) -> Tuple[bool, str]:
    tc = _bin("tc")
    if not tc:
        return False, "tc_not_found"
    return _ok([tc, "qdisc", "replace", "dev", ifname, "root", kind])


# --- NIC offloads / coalescing ----------------------------------------------

def parse_offloads(text: str) -> Dict[str, Tuple[str, bool]]:
    """
    Parse `ethtool -k` output into {short_name: (state, fixed)} for the
    features we manage. Features the driver does not list are omitted.
    """
    by_long = {v: k for k, v in OFFLOAD_FEATURES.items()}
    out: Dict[str, Tuple[str, bool]] = {}
    for raw in text.splitlines():
        m = _OFFLOAD_RE.match(raw)
        if not m:
            continue
        short = by_long.get(m.group(1).lower())
        if short:
            out[short] = (m.group(2).lower(), bool(m.group(3)))
    return out


def get_offloads(ifname: str) -> Optional[Dict[str, Tuple[str, bool]]]:
    ethtool = _bin("ethtool")
    if not ethtool:
        return None
    rc, out = _run([ethtool, "-k", ifname])
    if rc != 0:
        return None
    return parse_offloads(out)


def set_offload(ifname: str, feature: str, state: str) -> Tuple[bool, str]:
    ethtool = _bin("ethtool")
    if not ethtool:
        return False, "ethtool_not_found"
    return _ok([ethtool, "-K", ifname, feature, state])


def parse_coalescing(text: str) -> Dict[str, str]:
    """
    Parse `ethtool -c` output. Unsupported parameters come back as "n/a".
    """
    out: Dict[str, str] = {}
    for raw in text.splitlines():
        line = raw.strip()
        m = _ADAPTIVE_RE.match(line)
        if m:
            out["adaptive-rx"] = m.group(1).lower()
            out["adaptive-tx"] = m.group(2).lower()
            continue
        if ":" not in line:
            continue
        key, value = line.split(":", 1)
        key = key.strip().lower()
        if key in COALESCE_PARAMS:
            out[key] = value.strip().lower()
    return out


def get_coalescing(ifname: str) -> Optional[Dict[str, str]]:
    ethtool = _bin("ethtool")
    if not ethtool:
        return None
    rc, out = _run([ethtool, "-c", ifname])
    if rc != 0:
        return None
    return parse_coalescing(out)


def set_coalescing(ifname: str, param: str, value: str) -> Tuple[bool, str]:
    ethtool = _bin("ethtool")
    if not ethtool:
        return False, "ethtool_not_found"
    return _ok([ethtool, "-C", ifname, param, value])


# --- IRQ affinity -----------------------------------------------------------

def find_irqs(ifname: str) -> List[int]:
    """Find IRQ numbers for a network interface."""
    irqs: List[int] = []
    try:
        with open("/proc/interrupts", "r") as f:
            for line in f:
                # match whole device tokens so eth1 does not claim eth10's queues
                tokens = re.split(r"[\s,]+", line.strip())
                if not any(t == ifname or t.startswith(ifname + "-") for t in tokens[1:]):
                    continue
                try:
                    irqs.append(int(tokens[0].rstrip(":")))
                except (ValueError, IndexError):
                    continue
    except OSError:
        pass
    msi_path = Path(f"/sys/class/net/{ifname}/device/msi_irqs")
    if msi_path.is_dir():
        for irq_file in msi_path.iterdir():
            try:
                irqs.append(int(irq_file.name))
            except ValueError:
                continue
    return sorted(set(irqs))


def normalize_mask(mask: str) -> Optional[str]:
    raw = str(mask).strip().replace(",", "")
    try:
        return f"{int(raw, 16):x}"
    except ValueError:
        return None


def read_irq_affinity(irq: int) -> Optional[str]:
    path = Path(f"/proc/irq/{irq}/smp_affinity")
    try:
        return normalize_mask(path.read_text())
    except OSError:
        return None


def write_irq_affinity(irq: int, mask: str) -> Tuple[bool, str]:
    path = Path(f"/proc/irq/{irq}/smp_affinity")
    if not path.exists():
        return False, "smp_affinity_missing"
    try:
        path.write_text(mask)
        return True, ""
    except OSError as exc:
        return False, f"{type(exc).__name__}: {exc}"


# --- systemd ----------------------------------------------------------------

def systemctl(*args: str) -> Tuple[bool, str]:
    bin_ = _bin("systemctl")
    if not bin_:
        return False, "systemctl_not_found"
    return _ok([bin_, *args], timeout_s=30.0)


def unit_enabled(unit: str) -> Optional[bool]:
    bin_ = _bin("systemctl")
    if not bin_:
        return None
    rc, out = _run([bin_, "is-enabled", unit])
    if rc in (124, 127):
        return None
    return out.strip().splitlines()[0] == "enabled" if out.strip() else False


def unit_active(unit: str) -> Optional[bool]:
    bin_ = _bin("systemctl")
    if not bin_:
        return None
    rc, _out = _run([bin_, "is-active", "--quiet", unit])
    if rc in (124, 127):
        return None
    return rc == 0
