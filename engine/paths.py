import os
import tempfile
from dataclasses import dataclass
from pathlib import Path


PROJECT_ROOT = Path(__file__).resolve().parent.parent


def _is_container_runtime():
    if os.path.exists("/.dockerenv"):
        return True
    return os.path.isdir("/data")


def _default_root_paths():
    if _is_container_runtime():
        return {
            "data": Path("/data"),
            "config": Path("/config"),
            "logs": Path("/logs"),
        }
    base = PROJECT_ROOT / "data"
    return {
        "data": base,
        "config": base / "config",
        "logs": base / "logs",
    }


_DEFAULTS = _default_root_paths()

DATA_DIR = Path(os.environ.get("TRENDVAULT_DATA_DIR", _DEFAULTS["data"])).resolve()
CONFIG_DIR = Path(os.environ.get("TRENDVAULT_CONFIG_DIR", _DEFAULTS["config"])).resolve()
LOG_DIR = Path(os.environ.get("TRENDVAULT_LOG_DIR", _DEFAULTS["logs"])).resolve()
DB_PATH = Path(os.environ.get("TRENDVAULT_DB_PATH", DATA_DIR / "database" / "db.sqlite")).resolve()
TEMP_DIR = Path(
    os.environ.get("TRENDVAULT_TEMP_DIR", Path(tempfile.gettempdir()) / "trendvault-downloads")
).resolve()
STORAGE_ROOT = Path(os.environ.get("TRENDVAULT_STORAGE_ROOT", DATA_DIR / "storage")).resolve()


@dataclass(frozen=True)
class EnginePaths:
    log_dir: str
    db_path: str
    temp_downloads_dir: str
    storage_root: str


def ensure_dir(path):
    if path:
        os.makedirs(path, exist_ok=True)


def resolve_config_path(path):
    if not path:
        return os.path.join(CONFIG_DIR, "config.json")
    if os.path.isabs(path):
        return os.path.abspath(path)
    return os.path.abspath(os.path.join(CONFIG_DIR, path))


def build_engine_paths(*, db_path=None, temp_dir=None, log_dir=None, storage_root=None):
    db_path = Path(db_path or DB_PATH)
    temp_dir = Path(temp_dir or TEMP_DIR)
    log_dir = Path(log_dir or LOG_DIR)
    storage_root = Path(storage_root or STORAGE_ROOT)

    for d in (db_path.parent, temp_dir, log_dir):
        ensure_dir(d)

    return EnginePaths(
        log_dir=str(log_dir),
        db_path=str(db_path),
        temp_downloads_dir=str(temp_dir),
        storage_root=str(storage_root),
    )
