import json
import os
import shutil
import time
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from net_optimize.errors import PersistenceFailure

SCHEMA_VERSION = 1
BACKUP_GLOB = "backup-*.json"


def _fsync(f) -> None:
    f.flush()
    try:
        os.fsync(f.fileno())
    except OSError:
        # On some FS / environments fsync may fail; best-effort.
        pass


def _write_atomic(path: Path, payload: str, mode: int = 0o644) -> None:
    """
    Atomic replace with fsync.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + ".tmp")
    with open(tmp, "w", encoding="utf-8") as f:
        f.write(payload)
        _fsync(f)
    os.chmod(tmp, mode)
    os.replace(tmp, path)


def write_owned_file(path: Path, payload: str, mode: int = 0o644) -> None:
    """Overwrite one of the files this tool owns, wholesale."""
    try:
        _write_atomic(path, payload, mode)
    except OSError as exc:
        raise PersistenceFailure("write_failed", f"{path}:{exc}") from exc


def remove_owned_file(path: Path) -> bool:
    """Returns True when something was removed."""
    try:
        path.unlink()
        return True
    except FileNotFoundError:
        return False
    except OSError as exc:
        raise PersistenceFailure("remove_failed", f"{path}:{exc}") from exc


def copy_owned_tree(src: Path, dest: Path) -> None:
    """
    Replace ``dest`` with a copy of the package directory ``src``. The copy is
    staged next to ``dest`` so a failed copy leaves the previous tree intact.
    """
    staging = dest.with_name(dest.name + ".tmp")
    try:
        dest.parent.mkdir(parents=True, exist_ok=True)
        shutil.rmtree(staging, ignore_errors=True)
        shutil.copytree(src, staging, ignore=shutil.ignore_patterns("__pycache__", "*.pyc"))
        if dest.exists():
            shutil.rmtree(dest)
        os.replace(staging, dest)
    except OSError as exc:
        raise PersistenceFailure("write_failed", f"{dest}:{exc}") from exc


def _backup_name(now: float, attempt: int) -> str:
    stamp = time.strftime("%Y%m%dT%H%M%S", time.gmtime(now))
    micros = int((now % 1) * 1_000_000)
    return f"backup-{stamp}.{micros:06d}Z-{attempt:02d}.json"


def write_backup(
    state_dir: Path,
    values: Mapping[str, Optional[str]],
    *,
    profile: str,
    iface: str,
    now: Optional[float] = None,
) -> Path:
    """
    Persist the pre-mutation snapshot. Files are created exclusively and
    never rewritten, so each apply run leaves exactly one new snapshot.
    """
    now = time.time() if now is None else now
    payload: Dict[str, Any] = {
        "schema_version": SCHEMA_VERSION,
        "created": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(now)),
        "created_ts": now,
        "profile": profile,
        "iface": iface,
        "values": dict(values),
    }
    text = json.dumps(payload, indent=2, sort_keys=True)
    try:
        state_dir.mkdir(parents=True, exist_ok=True)
        for attempt in range(100):
            path = state_dir / _backup_name(now, attempt)
            try:
                with open(path, "x", encoding="utf-8") as f:
                    f.write(text)
                    _fsync(f)
            except FileExistsError:
                continue
            return path
    except OSError as exc:
        raise PersistenceFailure("backup_write_failed", f"{state_dir}:{exc}") from exc
    raise PersistenceFailure("backup_write_failed", f"{state_dir}:name_collision")


def list_backups(state_dir: Path) -> List[Path]:
    if not state_dir.is_dir():
        return []
    return sorted(state_dir.glob(BACKUP_GLOB))


def latest_backup(state_dir: Path) -> Optional[Path]:
    backups = list_backups(state_dir)
    return backups[-1] if backups else None


def load_backup(path: Path) -> Dict[str, Any]:
    """
    Returns the snapshot content (or {} if unreadable).
    """
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
        return data if isinstance(data, dict) else {}
    except Exception:
        return {}

