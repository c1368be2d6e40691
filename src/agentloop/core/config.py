from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Optional

logger = logging.getLogger("agentloop.config")

ENV_PREFIX = "AGENTLOOP_"
CONFIG_FILE_NAMES = ("agentloop.jsonc", "agentloop.json")
_TRUE_VALUES = {"1", "true", "yes", "on"}


def default_config_dir() -> str:
    return str(Path(os.path.expanduser("~")) / ".local" / "share" / "agentloop")


def find_config_file() -> Optional[str]:
    """Return the config file to use, or None.

    ``AGENTLOOP_CONFIG`` wins; otherwise ``agentloop.jsonc`` then
    ``agentloop.json`` in the default config directory.
    """
    explicit = os.getenv(f"{ENV_PREFIX}CONFIG")
    if explicit:
        return explicit if os.path.isfile(explicit) else None
    for name in CONFIG_FILE_NAMES:
        path = os.path.join(default_config_dir(), name)
        if os.path.isfile(path):
            return path
    return None


def strip_jsonc(content: str) -> str:
    """Remove ``//`` and ``/* */`` comments and trailing commas."""
    out: list[str] = []
    i = 0
    in_string = False
    while i < len(content):
        ch = content[i]
        if in_string:
            out.append(ch)
            if ch == "\\" and i + 1 < len(content):
                out.append(content[i + 1])
                i += 2
                continue
            if ch == '"':
                in_string = False
            i += 1
            continue
        if ch == '"':
            in_string = True
            out.append(ch)
            i += 1
            continue
        if content.startswith("//", i):
            end = content.find("\n", i)
            i = len(content) if end == -1 else end
            continue
        if content.startswith("/*", i):
            end = content.find("*/", i + 2)
            i = len(content) if end == -1 else end + 2
            continue
        out.append(ch)
        i += 1
    return re.sub(r",\s*([}\]])", r"\1", "".join(out))


def _camel_to_snake(name: str) -> str:
    return re.sub(r"(?<!^)(?=[A-Z])", "_", name).lower()


def load_config_file(path: Optional[str]) -> dict[str, Any]:
    """Read a JSON/JSONC config file into snake_case keys. Never raises."""
    if not path:
        return {}
    try:
        with open(path, "r", encoding="utf-8") as handle:
            content = handle.read()
        data = json.loads(strip_jsonc(content) if path.endswith(".jsonc") else content)
    except (OSError, ValueError) as exc:
        logger.warning("Failed to read config file %s: %s", path, exc)
        return {}
    if not isinstance(data, dict):
        logger.warning("Config file %s is not a JSON object", path)
        return {}
    return {_camel_to_snake(str(k)): v for k, v in data.items()}


class _Source:
    """Environment first, then the config file, then the default."""

    def __init__(self, file_values: dict[str, Any]) -> None:
        self.file_values = file_values

    def raw(self, name: str) -> Any:
        env = os.getenv(f"{ENV_PREFIX}{name.upper()}")
        if env is not None and env != "":
            return env
        return self.file_values.get(name)

    def get_str(self, name: str, default: Optional[str] = None) -> Optional[str]:
        value = self.raw(name)
        return default if value is None else str(value)

    def get_int(self, name: str, default: int) -> int:
        value = self.raw(name)
        return default if value is None else int(value)

    def get_float(self, name: str, default: float) -> float:
        value = self.raw(name)
        return default if value is None else float(value)

    def get_bool(self, name: str, default: bool) -> bool:
        value = self.raw(name)
        if value is None:
            return default
        if isinstance(value, bool):
            return value
        return str(value).strip().lower() in _TRUE_VALUES


@dataclass
class Settings:
    log_level: str
    log_dir: str
    workspace_dir: str
    host: str
    port: int
    host_api_url: str | None
    host_api_token: str | None
    loop_token: str | None
    countdown_seconds: float
    error_cooldown_ms: int
    toast_duration_ms: int
    iteration_debounce_ms: int
    recovery_window_ms: int
    default_max_iterations: int
    default_completion_marker: str
    codename_markers: bool
    completion_mode: str
    state_file_path: str
    agent: str | None
    model: str | None
    advisor_agent: str
    continuation_template_path: str | None
    task_continuation_enabled: bool
    iteration_loop_enabled: bool
    clear_logs_on_launch: bool
    config_file: str | None = None

    @staticmethod
    def from_env() -> "Settings":
        config_file = find_config_file()
        src = _Source(load_config_file(config_file))
        base_dir = default_config_dir()
        return Settings(
            log_level=src.get_str("log_level", "info"),
            log_dir=src.get_str("log_dir") or str(Path(base_dir) / "logs"),
            workspace_dir=src.get_str("workspace_dir") or os.getcwd(),
            host=src.get_str("host", "127.0.0.1"),
            port=src.get_int("port", 18791),
            host_api_url=src.get_str("host_api_url"),
            host_api_token=src.get_str("host_api_token"),
            loop_token=src.get_str("loop_token"),
            countdown_seconds=src.get_float("countdown_seconds", 2),
            error_cooldown_ms=src.get_int("error_cooldown_ms", 3000),
            toast_duration_ms=src.get_int("toast_duration_ms", 900),
            iteration_debounce_ms=src.get_int("iteration_debounce_ms", 3000),
            recovery_window_ms=src.get_int("recovery_window_ms", 5000),
            default_max_iterations=src.get_int("default_max_iterations", 100),
            default_completion_marker=src.get_str("default_completion_marker", "DONE"),
            codename_markers=src.get_bool("codename_markers", False),
            completion_mode=src.get_str("completion_mode", "marker").strip().lower(),
            state_file_path=src.get_str("state_file_path", os.path.join(".agent-loop", "iteration-state.md")),
            agent=src.get_str("agent"),
            model=src.get_str("model"),
            advisor_agent=src.get_str("advisor_agent", "advisor"),
            continuation_template_path=src.get_str("continuation_template_path"),
            task_continuation_enabled=src.get_bool("task_continuation_enabled", True),
            iteration_loop_enabled=src.get_bool("iteration_loop_enabled", True),
            clear_logs_on_launch=src.get_bool("clear_logs_on_launch", False),
            config_file=config_file,
        )

    def redacted(self) -> dict[str, Any]:
        """Settings as a dict with secrets masked, for display."""
        data = asdict(self)
        for key in ("host_api_token", "loop_token"):
            if data.get(key):
                data[key] = "***"
        return data


def config_source_info(settings: Optional[Settings] = None) -> dict[str, Any]:
    path = settings.config_file if settings is not None else find_config_file()
    return {
        "config_file": path,
        "config_file_exists": bool(path and os.path.isfile(path)),
        "default_config_dir": default_config_dir(),
        "env_prefix": ENV_PREFIX,
    }
