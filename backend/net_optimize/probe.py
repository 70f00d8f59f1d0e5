from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, TypeVar

from net_optimize import system
from net_optimize.config import RunConfig
from net_optimize.errors import DetectionError

log = logging.getLogger("net_optimize.probe")

T = TypeVar("T")

_PROBED_MODULES = ("tcp_bbr", "sch_cake")


@dataclass
class ProbeResult:
    iface: str
    iface_source: str = "explicit"
    bbr: Optional[bool] = None
    cake: Optional[bool] = None
    congestion_controls: Optional[List[str]] = None
    mtu: Optional[int] = None
    qdisc: Optional[str] = None
    offloads: Optional[Dict[str, Tuple[str, bool]]] = None
    coalescing: Optional[Dict[str, str]] = None
    irqs: List[int] = field(default_factory=list)
    irq_affinity: Dict[int, Optional[str]] = field(default_factory=dict)
    cpu_count: int = 1
    sysctl: Dict[str, Optional[str]] = field(default_factory=dict)
    modules: Dict[str, bool] = field(default_factory=dict)

    def current(self, setting: Any) -> Optional[str]:
        """Observed value for a Setting, in the same form as its target value."""
        category = setting.category
        if category == "module":
            loaded = self.modules.get(setting.param)
            if loaded is None:
                return None
            return "loaded" if loaded else "absent"
        if category == "sysctl":
            return self.sysctl.get(setting.key)
        if category == "qdisc":
            return self.qdisc
        if category == "link":
            return str(self.mtu) if self.mtu is not None else None
        if category == "offload":
            observed = (self.offloads or {}).get(setting.param)
            return observed[0] if observed else None
        if category == "coalesce":
            return (self.coalescing or {}).get(setting.param)
        if category == "irq":
            try:
                return self.irq_affinity.get(int(setting.target))
            except ValueError:
                return None
        return None


def _safe(name: str, fn: Callable[[], T], default: Optional[T] = None) -> Optional[T]:
    try:
        return fn()
    except Exception as exc:
        log.debug("probe_failed:%s:%s", name, exc)
        return default


def detect_iface(cfg: RunConfig) -> Tuple[str, str]:
    """
    Returns (iface, source). An explicit interface must exist; otherwise the
    default-route device is used.
    """
    if cfg.iface:
        if not _safe("iface_exists", lambda: system.iface_exists(cfg.iface), False):
            raise DetectionError("interface_not_found", cfg.iface)
        return cfg.iface, "explicit"
    iface = _safe("default_route", system.default_route_iface)
    if not iface:
        raise DetectionError("no_default_route_interface")
    return iface, "default_route"


def kernel_supports_bbr(congestion_controls: Optional[List[str]]) -> Optional[bool]:
    if congestion_controls and "bbr" in congestion_controls:
        return True
    return _safe("modprobe_tcp_bbr", lambda: system.module_available("tcp_bbr"))


def kernel_supports_cake() -> Optional[bool]:
    if _safe("sch_cake_loaded", lambda: system.module_loaded("sch_cake"), False):
        return True
    return _safe("modprobe_sch_cake", lambda: system.module_available("sch_cake"))


def probe(cfg: RunConfig, sysctl_keys: Iterable[str] = ()) -> ProbeResult:
    """
    Read-only look at the host. Individual query failures degrade to None
    ("unknown"); only a missing interface is fatal.
    """
    iface, source = detect_iface(cfg)

    ccs = _safe("congestion_controls", system.available_congestion_controls)
    result = ProbeResult(
        iface=iface,
        iface_source=source,
        congestion_controls=ccs,
        bbr=kernel_supports_bbr(ccs),
        cake=kernel_supports_cake(),
        mtu=_safe("mtu", lambda: system.get_mtu(iface)),
        qdisc=_safe("root_qdisc", lambda: system.get_root_qdisc(iface)),
        offloads=_safe("offloads", lambda: system.get_offloads(iface)),
        coalescing=_safe("coalescing", lambda: system.get_coalescing(iface)),
        irqs=_safe("irqs", lambda: system.find_irqs(iface), []) or [],
        cpu_count=_safe("cpu_count", system.cpu_count, 1) or 1,
    )

    for irq in result.irqs:
        result.irq_affinity[irq] = _safe(f"irq_{irq}", lambda irq=irq: system.read_irq_affinity(irq))
    for key in sysctl_keys:
        result.sysctl[key] = _safe(f"sysctl_{key}", lambda key=key: system.read_sysctl(key))
    for module in _PROBED_MODULES:
        loaded = _safe(f"module_{module}", lambda module=module: system.module_loaded(module))
        if loaded is not None:
            result.modules[module] = loaded

    log.debug(
        "probe_done:iface=%s source=%s bbr=%s cake=%s mtu=%s qdisc=%s",
        iface, source, result.bbr, result.cake, result.mtu, result.qdisc,
    )
    return result
