from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from net_optimize.errors import NetOptimizeError, UnsupportedFeature, ValidationError
from net_optimize.probe import ProbeResult
from net_optimize.system import OFFLOAD_FEATURES

MTU_MIN = 576
MTU_MAX = 65535

# Application order; the engine walks categories in this order.
CATEGORIES = ("module", "sysctl", "qdisc", "link", "offload", "coalesce", "irq")

CC_FALLBACK = "cubic"
QDISC_FALLBACK = "fq_codel"

# Congestion controls / qdiscs that ship as loadable modules.
_CC_MODULES = {"bbr": "tcp_bbr"}
_QDISC_MODULES = {"cake": "sch_cake"}

COMMON_SYSCTLS: Tuple[Tuple[str, str], ...] = (
    ("net.ipv4.tcp_fastopen", "1"),
    ("net.ipv4.tcp_mtu_probing", "1"),
)


@dataclass(frozen=True)
class Setting:
    key: str
    value: str
    category: str
    target: str = ""
    param: str = ""
    requires: Optional[str] = None

    def describe(self) -> str:
        """The command this setting amounts to, as printed by dry-run and logged by apply."""
        if self.category == "module":
            return f"modprobe {self.param}"
        if self.category == "sysctl":
            return f"sysctl -w {self.key}={self.value}"
        if self.category == "qdisc":
            return f"tc qdisc replace dev {self.target} root {self.value}"
        if self.category == "link":
            return f"ip link set dev {self.target} mtu {self.value}"
        if self.category == "offload":
            return f"ethtool -K {self.target} {self.param} {self.value}"
        if self.category == "coalesce":
            return f"ethtool -C {self.target} {self.param} {self.value}"
        if self.category == "irq":
            return f"echo {self.value} > /proc/irq/{self.target}/smp_affinity"
        return f"{self.key}={self.value}"


@dataclass(frozen=True)
class Profile:
    name: str
    description: str
    qdisc: str
    congestion_control: str
    sysctls: Tuple[Tuple[str, str], ...]
    offloads: str
    coalescing: Tuple[Tuple[str, str], ...]
    mtu: Optional[int] = None


PROFILES: Dict[str, Profile] = {
    "latency": Profile(
        name="latency",
        description="small buffers, shallow backlog, no interrupt batching",
        qdisc="cake",
        congestion_control="bbr",
        sysctls=(
            ("net.core.rmem_max", "16777216"),
            ("net.core.wmem_max", "16777216"),
            ("net.core.rmem_default", "262144"),
            ("net.core.wmem_default", "262144"),
            ("net.core.netdev_max_backlog", "1000"),
            ("net.ipv4.tcp_rmem", "4096 87380 16777216"),
            ("net.ipv4.tcp_wmem", "4096 65536 16777216"),
            ("net.ipv4.tcp_notsent_lowat", "16384"),
            ("net.ipv4.tcp_slow_start_after_idle", "0"),
        ),
        offloads="off",
        # adaptive first: some drivers reject fixed usecs while adaptive is on
        coalescing=(
            ("adaptive-rx", "off"),
            ("adaptive-tx", "off"),
            ("rx-usecs", "0"),
            ("tx-usecs", "0"),
        ),
    ),
    "balanced": Profile(
        name="balanced",
        description="moderate buffers with fair queueing",
        qdisc="cake",
        congestion_control="bbr",
        sysctls=(
            ("net.core.rmem_max", "33554432"),
            ("net.core.wmem_max", "33554432"),
            ("net.core.rmem_default", "262144"),
            ("net.core.wmem_default", "262144"),
            ("net.core.netdev_max_backlog", "5000"),
            ("net.ipv4.tcp_rmem", "4096 131072 33554432"),
            ("net.ipv4.tcp_wmem", "4096 65536 33554432"),
            ("net.ipv4.tcp_notsent_lowat", "131072"),
            ("net.ipv4.tcp_slow_start_after_idle", "0"),
        ),
        offloads="keep",
        coalescing=(
            ("adaptive-rx", "off"),
            ("adaptive-tx", "off"),
            ("rx-usecs", "16"),
            ("tx-usecs", "16"),
        ),
    ),
    "throughput": Profile(
        name="throughput",
        description="large buffers and backlog, adaptive coalescing, offloads on",
        qdisc="fq",
        congestion_control="bbr",
        sysctls=(
            ("net.core.rmem_max", "134217728"),
            ("net.core.wmem_max", "134217728"),
            ("net.core.rmem_default", "262144"),
            ("net.core.wmem_default", "262144"),
            ("net.core.netdev_max_backlog", "250000"),
            ("net.ipv4.tcp_rmem", "4096 87380 134217728"),
            ("net.ipv4.tcp_wmem", "4096 65536 134217728"),
            ("net.ipv4.tcp_slow_start_after_idle", "0"),
        ),
        offloads="on",
        coalescing=(
            ("adaptive-rx", "on"),
            ("adaptive-tx", "on"),
        ),
    ),
}

DEFAULT_PROFILE = "balanced"


@dataclass(frozen=True)
class Resolution:
    profile: str
    iface: str
    qdisc: str
    congestion_control: str
    settings: Tuple[Setting, ...] = ()
    notices: Tuple[NetOptimizeError, ...] = field(default=())

    def by_key(self) -> Dict[str, Setting]:
        return {s.key: s for s in self.settings}

    def of(self, category: str) -> List[Setting]:
        return [s for s in self.settings if s.category == category]


def get_profile(name: str) -> Optional[Profile]:
    return PROFILES.get((name or "").strip().lower())


def sysctl_keys(name: str) -> List[str]:
    """Every sysctl key a profile may touch, for probing current values."""
    profile = get_profile(name) or PROFILES[DEFAULT_PROFILE]
    keys = ["net.core.default_qdisc", "net.ipv4.tcp_congestion_control"]
    keys.extend(k for k, _v in profile.sysctls)
    keys.extend(k for k, _v in COMMON_SYSCTLS)
    return list(dict.fromkeys(keys))


def validate_mtu(mtu: int) -> Optional[ValidationError]:
    if mtu < MTU_MIN:
        return ValidationError("mtu_below_minimum", f"{mtu}<{MTU_MIN}")
    if mtu > MTU_MAX:
        return ValidationError("mtu_above_maximum", f"{mtu}>{MTU_MAX}")
    return None


def parse_cpu_list(value: str, cpu_count: int) -> Tuple[Optional[List[int]], Optional[str]]:
    raw = str(value or "").strip().lower()
    if not raw:
        return None, None

    cpus: List[int] = []
    for part in raw.split(","):
        part = part.strip()
        if not part:
            continue
        if "-" in part:
            a, b = part.split("-", 1)
            if not a.isdigit() or not b.isdigit():
                return None, "cpu_list_invalid_format"
            start = int(a)
            end = int(b)
            if end < start:
                return None, "cpu_list_invalid_range"
            cpus.extend(range(start, end + 1))
        else:
            if not part.isdigit():
                return None, "cpu_list_invalid_format"
            cpus.append(int(part))

    if not cpus:
        return None, "cpu_list_empty"
    for cpu in cpus:
        if cpu < 0 or cpu > cpu_count - 1:
            return None, "cpu_list_out_of_range"
    return sorted(set(cpus)), None


def _cpu_mask(cpus: List[int]) -> str:
    return f"{sum(1 << cpu for cpu in cpus):x}"


def _irq_settings(
    probe: ProbeResult,
    irq_affinity: str,
    notices: List[NetOptimizeError],
) -> List[Setting]:
    wanted = (irq_affinity or "").strip().lower()
    if not wanted:
        return []
    if not probe.irqs:
        notices.append(UnsupportedFeature("irq_affinity_no_irqs_found", probe.iface))
        return []

    cpu_count = max(1, probe.cpu_count)
    masks: Dict[int, str] = {}
    if wanted == "auto":
        for idx, irq in enumerate(probe.irqs):
            masks[irq] = _cpu_mask([idx % cpu_count])
    else:
        cpus, err = parse_cpu_list(wanted, cpu_count)
        if err or not cpus:
            notices.append(ValidationError(err or "cpu_list_empty", wanted))
            return []
        mask = _cpu_mask(cpus)
        for irq in probe.irqs:
            masks[irq] = mask

    return [
        Setting(key=f"irq.{irq}.smp_affinity", value=mask, category="irq", target=str(irq))
        for irq, mask in masks.items()
    ]


def _offload_settings(
    profile: Profile,
    probe: ProbeResult,
    mode: str,
    notices: List[NetOptimizeError],
) -> List[Setting]:
    policy = profile.offloads if mode == "profile" else mode
    if policy not in ("on", "off"):
        return []
    if probe.offloads is None:
        notices.append(UnsupportedFeature("offloads_unknown", probe.iface))
        return []

    out: List[Setting] = []
    for feature in OFFLOAD_FEATURES:
        observed = probe.offloads.get(feature)
        if observed is None:
            continue
        state, fixed = observed
        if fixed:
            if state != policy:
                notices.append(UnsupportedFeature("offload_fixed", f"{probe.iface}:{feature}"))
            continue
        out.append(Setting(
            key=f"offload.{probe.iface}.{feature}",
            value=policy,
            category="offload",
            target=probe.iface,
            param=feature,
        ))
    return out


def _coalesce_settings(
    profile: Profile,
    probe: ProbeResult,
    notices: List[NetOptimizeError],
) -> List[Setting]:
    if not profile.coalescing:
        return []
    if probe.coalescing is None:
        notices.append(UnsupportedFeature("coalescing_unknown", probe.iface))
        return []
    out: List[Setting] = []
    for param, value in profile.coalescing:
        observed = probe.coalescing.get(param)
        if observed is None or observed == "n/a":
            continue
        out.append(Setting(
            key=f"coalesce.{probe.iface}.{param}",
            value=value,
            category="coalesce",
            target=probe.iface,
            param=param,
        ))
    return out


def resolve(
    name: str,
    probe: ProbeResult,
    *,
    mtu: Optional[int] = None,
    offloads: str = "profile",
    coalescing: bool = True,
    irq_affinity: str = "",
) -> Resolution:
    """
    Turn a profile name plus what the probe saw into the ordered list of
    target settings. Pure: nothing is read from or written to the host.

    Unsupported kernel features are substituted (bbr -> cubic, cake ->
    fq_codel) and reported as notices, as are rejected user values.
    """
    notices: List[NetOptimizeError] = []
    profile = get_profile(name)
    if profile is None:
        notices.append(ValidationError("unknown_profile", f"{name}:using={DEFAULT_PROFILE}"))
        profile = PROFILES[DEFAULT_PROFILE]

    cc = profile.congestion_control
    if cc == "bbr" and probe.bbr is not True:
        notices.append(UnsupportedFeature("bbr_unavailable", f"fallback={CC_FALLBACK}"))
        cc = CC_FALLBACK

    qdisc = profile.qdisc
    if qdisc == "cake" and probe.cake is not True:
        notices.append(UnsupportedFeature("cake_unavailable", f"fallback={QDISC_FALLBACK}"))
        qdisc = QDISC_FALLBACK

    ordered: Dict[str, Setting] = {}

    def add(setting: Setting) -> None:
        ordered[setting.key] = setting

    cc_module = _CC_MODULES.get(cc)
    qdisc_module = _QDISC_MODULES.get(qdisc)
    cc_requires = f"module.{cc_module}" if cc_module else None
    qdisc_requires = f"module.{qdisc_module}" if qdisc_module else None
    for module in (cc_module, qdisc_module):
        if module:
            add(Setting(key=f"module.{module}", value="loaded", category="module", param=module))

    add(Setting(key="net.core.default_qdisc", value=qdisc, category="sysctl", requires=qdisc_requires))
    add(Setting(key="net.ipv4.tcp_congestion_control", value=cc, category="sysctl", requires=cc_requires))
    for key, value in profile.sysctls + COMMON_SYSCTLS:
        add(Setting(key=key, value=value, category="sysctl"))

    add(Setting(
        key=f"qdisc.{probe.iface}.root",
        value=qdisc,
        category="qdisc",
        target=probe.iface,
        requires=qdisc_requires,
    ))

    target_mtu = mtu if mtu is not None else profile.mtu
    if target_mtu is not None:
        err = validate_mtu(target_mtu)
        if err is not None:
            notices.append(err)
        else:
            add(Setting(
                key=f"link.{probe.iface}.mtu",
                value=str(target_mtu),
                category="link",
                target=probe.iface,
            ))

    for setting in _offload_settings(profile, probe, offloads, notices):
        add(setting)
    if coalescing:
        for setting in _coalesce_settings(profile, probe, notices):
            add(setting)
    for setting in _irq_settings(probe, irq_affinity, notices):
        add(setting)

    return Resolution(
        profile=profile.name,
        iface=probe.iface,
        qdisc=qdisc,
        congestion_control=cc,
        settings=tuple(ordered.values()),
        notices=tuple(notices),
    )
