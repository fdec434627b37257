import os
from dataclasses import dataclass
from typing import Dict, Optional

from .domain.models import DEFAULT_ALLOWED_TYPES, DEFAULT_MAX_UPLOAD_BYTES, UploadLimits
from .logging import get_logger, redact
from .paths import find_project_root, var_dir

log = get_logger("config")

DEFAULT_CAPTURE_SIZE = 720
DEFAULT_DB_FOLDER = "returnsdb"
DEFAULT_DB_FILENAME = "returns.sqlite3"

_TRUTHY = {"1", "true", "yes", "on"}


@dataclass
class StorageSettings:
    backend: str
    local_dir: str
    public_base_url: Optional[str] = None
    supabase_url: Optional[str] = None
    supabase_key: Optional[str] = None
    bucket: Optional[str] = None


def _find_upwards(start_dir: str, filename: str) -> Optional[str]:
    """Return first matching file found when walking up from start_dir."""
    d = os.path.abspath(start_dir or ".")
    while True:
        candidate = os.path.join(d, filename)
        if os.path.isfile(candidate):
            return candidate
        parent = os.path.dirname(d)
        if parent == d:
            return None
        d = parent


def _read_dotenv(dotenv_dir: str) -> Dict[str, str]:
    """Minimal .env reader.

    - Reads key=value pairs, ignores comments (#/;) and blank lines.
    - Trims single/double quotes around the value.
    - Returns mapping; does not mutate environment.
    """
    env: Dict[str, str] = {}
    path = _find_upwards(dotenv_dir, ".env")
    if not path:
        log.debug(f"No .env found starting from: {os.path.abspath(dotenv_dir)}")
        return env
    try:
        with open(path, "r", encoding="utf-8") as f:
            for raw in f:
                line = raw.strip()
                if not line or line.startswith("#") or line.startswith(";"):
                    continue
                if "=" not in line:
                    continue
                k, v = line.split("=", 1)
                k = k.strip()
                v = v.strip()
                if (v.startswith('"') and v.endswith('"')) or (v.startswith("'") and v.endswith("'")):
                    v = v[1:-1]
                env[k] = v.strip()
        log.debug(f"Loaded {len(env)} key(s) from .env at {path}")
    except OSError as e:
        log.warning(f"Failed reading .env: {e}")
    return env


def _lookup(key: str, env: Dict[str, str]) -> Optional[str]:
    v = os.environ.get(key)
    if v is None:
        v = env.get(key)
    if v is None:
        return None
    v = v.strip()
    return v or None


def _lookup_int(key: str, env: Dict[str, str], default: int) -> int:
    raw = _lookup(key, env)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        log.warning(f"{key}={raw!r} is not an integer; using {default}")
        return default


def load_storage_settings(dotenv_dir: str) -> StorageSettings:
    env = _read_dotenv(dotenv_dir)
    backend = (_lookup("RETURNS_STORAGE_BACKEND", env) or "local").lower()
    if backend not in {"local", "supabase"}:
        log.warning(f"Unknown RETURNS_STORAGE_BACKEND '{backend}'; falling back to local")
        backend = "local"
    local_dir = _lookup("RETURNS_STORAGE_DIR", env) or os.path.join(
        var_dir(find_project_root(dotenv_dir)), "storage"
    )
    settings = StorageSettings(
        backend=backend,
        local_dir=os.path.abspath(local_dir),
        public_base_url=_lookup("RETURNS_PUBLIC_BASE_URL", env),
        supabase_url=_lookup("SUPABASE_URL", env),
        supabase_key=_lookup("SUPABASE_KEY", env),
        bucket=_lookup("SUPABASE_BUCKET", env),
    )
    if settings.backend == "supabase":
        log.info(f"Storage backend: supabase bucket={settings.bucket} key={redact(settings.supabase_key)}")
    else:
        log.info(f"Storage backend: local dir={settings.local_dir}")
    return settings


def load_upload_limits(dotenv_dir: str) -> UploadLimits:
    env = _read_dotenv(dotenv_dir)
    max_bytes = _lookup_int("RETURNS_MAX_UPLOAD_BYTES", env, DEFAULT_MAX_UPLOAD_BYTES)
    return UploadLimits(max_bytes=max_bytes, allowed_types=DEFAULT_ALLOWED_TYPES)


def load_capture_size(dotenv_dir: str) -> int:
    env = _read_dotenv(dotenv_dir)
    size = _lookup_int("RETURNS_CAPTURE_SIZE", env, DEFAULT_CAPTURE_SIZE)
    if size <= 0:
        log.warning(f"RETURNS_CAPTURE_SIZE must be positive; using {DEFAULT_CAPTURE_SIZE}")
        return DEFAULT_CAPTURE_SIZE
    return size


def load_completion_policy(dotenv_dir: str) -> bool:
    """Return True when Completed requires both team and action to be set."""
    env = _read_dotenv(dotenv_dir)
    raw = _lookup("RETURNS_REQUIRE_TEAM_AND_ACTION", env)
    return bool(raw) and raw.lower() in _TRUTHY


def load_db_path(dotenv_dir: str) -> str:
    env = _read_dotenv(dotenv_dir)
    configured = _lookup("RETURNS_DB_PATH", env)
    if configured:
        return os.path.abspath(os.path.expanduser(configured))
    root = find_project_root(dotenv_dir)
    return os.path.join(var_dir(root), DEFAULT_DB_FOLDER, DEFAULT_DB_FILENAME)
