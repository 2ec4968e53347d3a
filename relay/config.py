from __future__ import annotations

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from urllib.parse import urlsplit, urlunsplit

import yaml

DEFAULT_API_ENDPOINT = "http://localhost:8000/api/vscode_user_message"
CANCEL_PATH = "/api/agent/stop"
CONFIG_FILE_NAME = "relay.yaml"


@dataclass
class RelayConfig:
    api_endpoint: str = DEFAULT_API_ENDPOINT
    cancel_endpoint: str = ""
    api_headers: dict[str, str] = field(default_factory=lambda: {"Content-Type": "application/json"})
    request_timeout: float = 30.0
    webhook_host: str = "127.0.0.1"
    webhook_port: int = 3001
    callback_path: str = "/agent-response"
    workspace_root: str = ""
    auto_open_modified_files: bool = True
    backup_capacity: int = 50
    dedup_capacity: int = 100
    log_level: str = "INFO"
    project_id: str = ""
    chat_id: str = ""
    user_id: str = ""

    @property
    def workspace_path(self) -> Path:
        if self.workspace_root:
            return Path(self.workspace_root).expanduser().resolve()
        return Path.cwd().resolve()

    @property
    def resolved_cancel_endpoint(self) -> str:
        """Cancel URL: explicit setting, else derived from ``api_endpoint``."""
        if self.cancel_endpoint:
            return self.cancel_endpoint
        parts = urlsplit(self.api_endpoint)
        if not parts.scheme or not parts.netloc:
            return f"http://localhost:8000{CANCEL_PATH}"
        return urlunsplit((parts.scheme, parts.netloc, CANCEL_PATH, "", ""))


_ENV_OVERRIDES = {
    "RELAY_API_ENDPOINT": ("api_endpoint", str),
    "RELAY_WEBHOOK_PORT": ("webhook_port", int),
    "RELAY_WORKSPACE": ("workspace_root", str),
    "RELAY_LOG_LEVEL": ("log_level", str),
}

def _default_path() -> Path:
    project_dir = os.environ.get("RELAY_PROJECT_DIR", os.getcwd())
    return Path(project_dir) / CONFIG_FILE_NAME


def _apply_env(cfg: RelayConfig) -> RelayConfig:
    for env_name, (attr, cast) in _ENV_OVERRIDES.items():
        value = os.environ.get(env_name)
        if value:
            setattr(cfg, attr, cast(value))
    return cfg


def load_config(path: str | Path | None = None) -> RelayConfig:
    """Read ``relay.yaml``; a missing file yields the defaults."""
    path = Path(path) if path is not None else _default_path()
    raw: dict = {}
    if path.exists():
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
    known = {f.name for f in fields(RelayConfig)}
    cfg = RelayConfig(**{k: v for k, v in raw.items() if k in known})
    if not cfg.callback_path.startswith("/"):
        cfg.callback_path = "/" + cfg.callback_path
    return _apply_env(cfg)
