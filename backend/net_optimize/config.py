import json
import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

CONFIG_PATH = Path("/etc/net-optimize/config.json")

ACTIONS = ("dry-run", "apply", "revert", "status", "install-service", "remove-service")
MUTATING_ACTIONS = ("apply", "revert", "install-service", "remove-service")
OFFLOAD_MODES = ("profile", "on", "off", "keep")

DEFAULT_CONFIG: Dict[str, Any] = {
    # Tuning profile: "latency" | "balanced" | "throughput"
    "profile": "balanced",

    # Leave empty to follow the default route.
    "iface": "",

    # None leaves the interface MTU untouched.
    "mtu": None,

    # "profile" follows the profile's offload policy; "on" / "off" force it;
    # "keep" never touches offload flags.
    "offloads": "profile",

    "coalescing": True,

    # "" leaves IRQ affinity alone, "auto" spreads IRQs over all CPUs,
    # otherwise a CPU list such as "0-3,6".
    "irq_affinity": "",
}


@dataclass(frozen=True)
class Paths:
    sysctl_file: Path = Path("/etc/sysctl.d/99-net-optimize.conf")
    modules_file: Path = Path("/etc/modules-load.d/net-optimize.conf")
    unit_dir: Path = Path("/etc/systemd/system")
    state_dir: Path = Path("/var/lib/net-optimize")
    log_file: Path = Path("/var/log/net-optimize.log")
    bin_path: Path = Path("/usr/local/sbin/net-optimize")
    lib_dir: Path = Path("/usr/local/lib/net-optimize")

    @classmethod
    def under(cls, root: Path) -> "Paths":
        """Relocate every owned path below ``root`` (chroots, packaging tests)."""
        base = cls()
        return cls(**{
            f.name: Path(root) / str(getattr(base, f.name)).lstrip("/")
            for f in fields(cls)
        })


@dataclass(frozen=True)
class RunConfig:
    action: str = "dry-run"
    profile: str = "balanced"
    iface: Optional[str] = None
    mtu: Optional[int] = None
    offloads: str = "profile"
    coalescing: bool = True
    irq_affinity: str = ""
    verbose: bool = False
    json_output: bool = False
    paths: Paths = field(default_factory=Paths)

    @property
    def mutating(self) -> bool:
        return self.action in MUTATING_ACTIONS

    def with_iface(self, iface: Optional[str]) -> "RunConfig":
        return replace(self, iface=iface)

    def unit_name(self, iface: str) -> str:
        return f"net-optimize@{iface}.service"

    def unit_path(self, iface: str) -> Path:
        return self.paths.unit_dir / self.unit_name(iface)


def _truthy(value: object) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on", "y")
    return False


def config_path(env: Optional[Mapping[str, str]] = None) -> Path:
    env = os.environ if env is None else env
    override = env.get("NET_OPTIMIZE_CONFIG", "").strip()
    return Path(override) if override else CONFIG_PATH


def read_config_file(path: Path) -> Dict[str, Any]:
    """
    Returns the raw JSON content on disk (or {} if missing/invalid).
    """
    if not path.exists():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
        return data if isinstance(data, dict) else {}
    except Exception:
        return {}


def load_config(path: Optional[Path] = None) -> Dict[str, Any]:
    """
    Returns DEFAULT_CONFIG merged with the known keys of the on-disk config.
    """
    cfg = DEFAULT_CONFIG.copy()
    for k, v in read_config_file(path or config_path()).items():
        if k in DEFAULT_CONFIG:
            cfg[k] = v
    return cfg


def _coerce_mtu(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def build_run_config(
    action: str,
    overrides: Mapping[str, Any],
    *,
    file_cfg: Optional[Mapping[str, Any]] = None,
    env: Optional[Mapping[str, str]] = None,
) -> RunConfig:
    """
    Merge defaults, config file and CLI overrides (in that order, CLI wins;
    ``None`` in ``overrides`` means "not given") into one frozen RunConfig.
    """
    env = os.environ if env is None else env
    merged: Dict[str, Any] = DEFAULT_CONFIG.copy()
    merged.update(file_cfg or {})
    for k, v in overrides.items():
        if v is not None:
            merged[k] = v

    root = env.get("NET_OPTIMIZE_ROOT", "").strip()
    paths = Paths.under(Path(root)) if root else Paths()

    offloads = str(merged.get("offloads") or "profile").strip().lower()
    if offloads not in OFFLOAD_MODES:
        offloads = "profile"

    iface = str(merged.get("iface") or "").strip() or None

    return RunConfig(
        action=action,
        profile=str(merged.get("profile") or "balanced").strip().lower(),
        iface=iface,
        mtu=_coerce_mtu(merged.get("mtu")),
        offloads=offloads,
        coalescing=_truthy(merged.get("coalescing", True)),
        irq_affinity=str(merged.get("irq_affinity") or "").strip(),
        verbose=_truthy(merged.get("verbose", False)),
        json_output=_truthy(merged.get("json_output", False)),
        paths=paths,
    )
