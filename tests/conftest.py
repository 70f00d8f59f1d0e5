from typing import Dict, List, Optional, Set, Tuple

import pytest

from net_optimize import system
from net_optimize.config import Paths, RunConfig

BOOT_SYSCTLS: Dict[str, str] = {
    "net.core.default_qdisc": "fq_codel",
    "net.ipv4.tcp_congestion_control": "cubic",
    "net.core.rmem_max": "212992",
    "net.core.wmem_max": "212992",
    "net.core.rmem_default": "212992",
    "net.core.wmem_default": "212992",
    "net.core.netdev_max_backlog": "1000",
    "net.ipv4.tcp_rmem": "4096 131072 6291456",
    "net.ipv4.tcp_wmem": "4096 16384 4194304",
    "net.ipv4.tcp_notsent_lowat": "4294967295",
    "net.ipv4.tcp_slow_start_after_idle": "1",
    "net.ipv4.tcp_fastopen": "1",
    "net.ipv4.tcp_mtu_probing": "0",
}


class FakeHost:
    """
    In-memory stand-in for the OS adapter. Every mutation is recorded in
    ``calls``; keys in ``fail`` make the matching mutation fail.
    """

    def __init__(self) -> None:
        self.root = True
        self.default_iface: Optional[str] = "eth0"
        self.ifaces: Set[str] = {"eth0"}
        self.sysctl: Dict[str, str] = dict(BOOT_SYSCTLS)
        self.clamp: Dict[str, str] = {}
        self.loaded: Set[str] = set()
        self.modules: Set[str] = {"tcp_bbr", "sch_cake"}
        self.mtu: Dict[str, int] = {"eth0": 1500}
        self.qdisc: Dict[str, str] = {"eth0": "fq_codel"}
        self.offloads: Optional[Dict[str, Tuple[str, bool]]] = {
            "gro": ("on", False),
            "gso": ("on", False),
            "tso": ("on", False),
            "lro": ("off", True),
        }
        self.coalescing: Optional[Dict[str, str]] = {
            "rx-usecs": "3",
            "tx-usecs": "0",
            "adaptive-rx": "off",
            "adaptive-tx": "n/a",
        }
        self.irqs: List[int] = [24, 25]
        self.irq_masks: Dict[int, str] = {24: "f", 25: "f"}
        self.cpus = 4
        self.enabled_units: Set[str] = set()
        self.fail: Set[str] = set()
        self.calls: List[str] = []
        self.systemctl_calls: List[Tuple[str, ...]] = []
        self.reloads = 0

    # --- reads
    def available_ccs(self) -> List[str]:
        out = ["reno", "cubic"]
        if "tcp_bbr" in self.loaded:
            out.append("bbr")
        return out

    def read_sysctl(self, key: str) -> Optional[str]:
        return self.sysctl.get(key)

    # --- mutations
    def _mutate(self, key: str, line: str) -> Tuple[bool, str]:
        self.calls.append(line)
        if key in self.fail:
            return False, "Operation not supported"
        return True, ""

    def write_sysctl(self, key: str, value: str) -> Tuple[bool, str]:
        if key not in self.sysctl:
            return False, "sysctl_key_missing"
        if key == "net.ipv4.tcp_congestion_control" and value not in self.available_ccs():
            self.calls.append(f"sysctl {key}={value}")
            return False, "No such file or directory"
        ok, out = self._mutate(key, f"sysctl {key}={value}")
        if ok:
            self.sysctl[key] = self.clamp.get(key, system.normalize_value(value))
        return ok, out

    def load_module(self, name: str) -> Tuple[bool, str]:
        if name not in self.modules:
            self.calls.append(f"modprobe {name}")
            return False, f"modprobe: FATAL: Module {name} not found"
        ok, out = self._mutate(f"module.{name}", f"modprobe {name}")
        if ok:
            self.loaded.add(name)
        return ok, out

    def set_mtu(self, ifname: str, mtu: int) -> Tuple[bool, str]:
        ok, out = self._mutate(f"link.{ifname}.mtu", f"mtu {ifname} {mtu}")
        if ok:
            self.mtu[ifname] = mtu
        return ok, out

    def set_root_qdisc(self, ifname: str, kind: str) -> Tuple[bool, str]:
        ok, out = self._mutate(f"qdisc.{ifname}.root", f"qdisc {ifname} {kind}")
        if ok:
            self.qdisc[ifname] = kind
        return ok, out

    def set_offload(self, ifname: str, feature: str, value: str) -> Tuple[bool, str]:
        ok, out = self._mutate(f"offload.{ifname}.{feature}", f"offload {ifname} {feature} {value}")
        if ok and self.offloads is not None:
            self.offloads[feature] = (value, False)
        return ok, out

    def set_coalescing(self, ifname: str, param: str, value: str) -> Tuple[bool, str]:
        ok, out = self._mutate(f"coalesce.{ifname}.{param}", f"coalesce {ifname} {param} {value}")
        if ok and self.coalescing is not None:
            self.coalescing[param] = value
        return ok, out

    def write_irq(self, irq: int, mask: str) -> Tuple[bool, str]:
        ok, out = self._mutate(f"irq.{irq}.smp_affinity", f"irq {irq} {mask}")
        if ok:
            self.irq_masks[irq] = mask
        return ok, out

    def reload_sysctl(self) -> Tuple[bool, str]:
        self.reloads += 1
        self.calls.append("sysctl --system")
        return True, ""

    def systemctl(self, *args: str) -> Tuple[bool, str]:
        self.systemctl_calls.append(args)
        if args[:1] == ("enable",):
            self.enabled_units.add(args[-1])
        elif args[:1] == ("disable",):
            self.enabled_units.discard(args[-1])
        return True, ""

    def install(self, monkeypatch) -> "FakeHost":
        patches = {
            "is_root": lambda: self.root,
            "cpu_count": lambda: self.cpus,
            "default_route_iface": lambda: self.default_iface,
            "iface_exists": lambda ifname: ifname in self.ifaces,
            "get_mtu": lambda ifname: self.mtu.get(ifname),
            "set_mtu": self.set_mtu,
            "read_sysctl": self.read_sysctl,
            "write_sysctl": self.write_sysctl,
            "reload_sysctl": self.reload_sysctl,
            "available_congestion_controls": self.available_ccs,
            "module_loaded": lambda name: name in self.loaded,
            "module_available": lambda name: name in self.modules,
            "load_module": self.load_module,
            "get_root_qdisc": lambda ifname: self.qdisc.get(ifname),
            "set_root_qdisc": self.set_root_qdisc,
            "get_offloads": lambda ifname: dict(self.offloads) if self.offloads is not None else None,
            "set_offload": self.set_offload,
            "get_coalescing": lambda ifname: dict(self.coalescing) if self.coalescing is not None else None,
            "set_coalescing": self.set_coalescing,
            "find_irqs": lambda ifname: list(self.irqs),
            "read_irq_affinity": lambda irq: self.irq_masks.get(irq),
            "write_irq_affinity": self.write_irq,
            "systemctl": self.systemctl,
            "unit_enabled": lambda unit: unit in self.enabled_units,
            "unit_active": lambda unit: unit in self.enabled_units,
        }
        for name, fn in patches.items():
            monkeypatch.setattr(system, name, fn)
        return self


@pytest.fixture
def host(monkeypatch) -> FakeHost:
    return FakeHost().install(monkeypatch)


@pytest.fixture
def make_cfg(tmp_path):
    paths = Paths.under(tmp_path)

    def _make(**kwargs) -> RunConfig:
        kwargs.setdefault("paths", paths)
        return RunConfig(**kwargs)

    return _make
