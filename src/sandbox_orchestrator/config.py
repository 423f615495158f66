import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional

from sandbox_orchestrator.domain.connections import DEFAULT_MCP_PORT, DEFAULT_MCP_TIMEOUT_SEC

DEFAULT_CONFIG_DIR = Path.home() / ".config" / "sandbox-orchestrator"
DEFAULT_TEMPLATE = "base"
DEFAULT_SESSION_TTL_SEC = 24 * 60 * 60
DEFAULT_KEEPALIVE_INTERVAL_SEC = 240


@dataclass
class OrchestratorConfig:
    config_dir: Path
    env_path: Path
    state_db_path: Path
    e2b_api_key: str = ""
    sandbox_template: str = DEFAULT_TEMPLATE
    mcp_default_port: int = DEFAULT_MCP_PORT
    mcp_default_timeout_sec: int = DEFAULT_MCP_TIMEOUT_SEC
    exec_timeout_sec: int = 300
    readiness_attempts: int = 5
    readiness_interval_sec: float = 3.0
    callback_base_url: str = ""
    session_ttl_sec: int = DEFAULT_SESSION_TTL_SEC
    workflow_step_attempts: int = 3
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    openai_base_url: str = "https://api.openai.com/v1"
    mcp_catalog_path: Optional[Path] = None
    mcp_endpoint_path: str = "/mcp"
    mcp_keepalive_interval_sec: int = DEFAULT_KEEPALIVE_INTERVAL_SEC
    log_level: str = "INFO"


def load_env_file(path: Path) -> Dict[str, str]:
    data: Dict[str, str] = {}
    if not path.exists():
        return data
    try:
        for line in path.read_text(encoding="utf-8").splitlines():
            line = line.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue
            k, v = line.split("=", 1)
            data[k.strip()] = v.strip().strip('"').strip("'")
    except Exception as exc:
        print(f"Failed to read .env: {exc}", file=sys.stderr)
    return data


def get_env_value(key: str, env_file: Dict[str, str]) -> Optional[str]:
    return os.environ.get(key) or env_file.get(key)


def apply_env_defaults(env_file: Dict[str, str], target_env: Optional[Dict[str, str]] = None) -> int:
    """Populate missing process env vars from .env-style mapping.

    Existing environment values are never overwritten.
    Returns the number of keys applied.
    """
    target = target_env if target_env is not None else os.environ  # type: ignore[assignment]
    applied = 0
    for raw_key, raw_value in (env_file or {}).items():
        key = str(raw_key or "").strip()
        if not key:
            continue
        if key in target and str(target.get(key) or "").strip():
            continue
        target[key] = str(raw_value or "")
        applied += 1
    return applied


def get_env_path(config_dir: Path) -> Path:
    return config_dir / ".env"


def load_env_with_fallback(config_dir: Path) -> Dict[str, str]:
    data = load_env_file(get_env_path(config_dir))
    if data:
        return data
    return load_env_file(Path.cwd() / ".env")


def _read_int(key: str, env_file: Dict[str, str], default: int) -> int:
    raw = (get_env_value(key, env_file) or "").strip()
    if not raw:
        return default
    try:
        return max(1, int(raw))
    except ValueError:
        return default


def _read_float(key: str, env_file: Dict[str, str], default: float) -> float:
    raw = (get_env_value(key, env_file) or "").strip()
    if not raw:
        return default
    try:
        return max(0.0, float(raw))
    except ValueError:
        return default


def load_config(config_dir: Path = DEFAULT_CONFIG_DIR) -> OrchestratorConfig:
    env_file = load_env_with_fallback(config_dir)
    apply_env_defaults(env_file)

    catalog_raw = (get_env_value("MCP_SERVER_CATALOG", env_file) or "").strip()
    db_raw = (get_env_value("STATE_DB_PATH", env_file) or "").strip()
    state_db_path = Path(db_raw).expanduser() if db_raw else config_dir / "state.db"

    return OrchestratorConfig(
        config_dir=config_dir,
        env_path=get_env_path(config_dir),
        state_db_path=state_db_path,
        e2b_api_key=(get_env_value("E2B_API_KEY", env_file) or "").strip(),
        sandbox_template=(get_env_value("E2B_TEMPLATE", env_file) or DEFAULT_TEMPLATE).strip(),
        mcp_default_port=_read_int("MCP_DEFAULT_PORT", env_file, DEFAULT_MCP_PORT),
        mcp_default_timeout_sec=_read_int("MCP_DEFAULT_TIMEOUT_SEC", env_file, DEFAULT_MCP_TIMEOUT_SEC),
        exec_timeout_sec=_read_int("SANDBOX_EXEC_TIMEOUT_SEC", env_file, 300),
        readiness_attempts=_read_int("READINESS_ATTEMPTS", env_file, 5),
        readiness_interval_sec=_read_float("READINESS_INTERVAL_SEC", env_file, 3.0),
        callback_base_url=(get_env_value("CALLBACK_BASE_URL", env_file) or "").strip().rstrip("/"),
        session_ttl_sec=_read_int("SESSION_TTL_SEC", env_file, DEFAULT_SESSION_TTL_SEC),
        workflow_step_attempts=_read_int("WORKFLOW_STEP_ATTEMPTS", env_file, 3),
        openai_api_key=(get_env_value("OPENAI_API_KEY", env_file) or "").strip(),
        openai_model=(get_env_value("OPENAI_MODEL", env_file) or "gpt-4o-mini").strip(),
        openai_base_url=(get_env_value("OPENAI_BASE_URL", env_file) or "https://api.openai.com/v1").strip(),
        mcp_catalog_path=Path(catalog_raw).expanduser() if catalog_raw else None,
        mcp_endpoint_path=(get_env_value("MCP_ENDPOINT_PATH", env_file) or "/mcp").strip(),
        mcp_keepalive_interval_sec=_read_int("MCP_KEEPALIVE_INTERVAL_SEC", env_file, DEFAULT_KEEPALIVE_INTERVAL_SEC),
        log_level=(get_env_value("LOG_LEVEL", env_file) or "INFO").strip().upper(),
    )
