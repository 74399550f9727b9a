from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Dict, Optional

APP = "mcphub"
ENV_PREFIX = "MCPHUB_"
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

logger = logging.getLogger(__name__)


def config_dir() -> Path:
    """
    Cross-platform config directory:
      - Windows: %APPDATA%\\mcphub
      - macOS/Linux: $XDG_CONFIG_HOME/mcphub or ~/.config/mcphub
    """
    if os.name == "nt":
        base = os.environ.get("APPDATA") or str(Path.home())
        return Path(base) / APP
    return Path(os.environ.get("XDG_CONFIG_HOME", str(Path.home() / ".config"))) / APP


def config_path() -> Path:
    return config_dir() / "config.json"


def read_dotenv(path: Path) -> Dict[str, str]:
    """Parse KEY=value lines from a .env file.

    Blank lines, comments and an optional ``export`` prefix are accepted;
    matching single or double quotes around a value are stripped.
    """
    values: Dict[str, str] = {}
    if not path.is_file():
        return values
    try:
        lines = path.read_text(encoding="utf-8").splitlines()
    except OSError as e:
        logger.warning("Cannot read %s: %s", path, e)
        return values

    for raw in lines:
        line = raw.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        if line.startswith("export "):
            line = line[len("export "):]
        key, _, value = line.partition("=")
        key, value = key.strip(), value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
            value = value[1:-1]
        if key:
            values[key] = value
    return values


def load_dotenv_files(directory: Path) -> None:
    """Export .env values from the config dir, then the working dir.

    Variables already present in the environment always win.
    """
    merged: Dict[str, str] = {}
    for candidate in (directory / ".env", Path.cwd() / ".env"):
        merged.update(read_dotenv(candidate))
    for key, value in merged.items():
        os.environ.setdefault(key, value)


@dataclass
class Settings:
    plugins_dir: str = "plugins"
    health_check_interval_s: float = 30.0
    health_check_timeout_s: float = 5.0
    # Defaults for manifests that leave out their "process" section
    restart_policy: str = "on-failure"
    max_restarts: int = 3
    restart_delay_s: float = 1.0
    call_timeout_s: float = 30.0
    log_level: str = "INFO"

    @staticmethod
    def load(path: Optional[Path] = None) -> "Settings":
        path = path or config_path()

        # .env files first so MCPHUB_* values in them act as overrides below
        load_dotenv_files(config_dir())

        data: dict = {}
        if path.exists():
            try:
                data = json.loads(path.read_text(encoding="utf-8"))
            except (OSError, ValueError) as e:
                logger.warning("Ignoring unreadable config %s: %s", path, e)
                data = {}
            if not isinstance(data, dict):
                data = {}

        s = Settings()
        for f in fields(Settings):
            raw = os.environ.get(ENV_PREFIX + f.name.upper(), data.get(f.name))
            if raw is None:
                continue
            default = getattr(s, f.name)
            try:
                setattr(s, f.name, type(default)(raw))
            except (TypeError, ValueError):
                logger.warning("Invalid value for %s: %r (keeping %r)", f.name, raw, default)

        s.log_level = s.log_level.upper()
        if s.log_level not in LOG_LEVELS:
            logger.warning("Invalid value for log_level: %r (keeping %r)", s.log_level, Settings.log_level)
            s.log_level = Settings.log_level
        return s

    def save(self, path: Optional[Path] = None) -> Path:
        path = path or config_path()
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(asdict(self), indent=2), encoding="utf-8")
        return path

    def process_defaults(self) -> dict:
        """Manifest ``process`` defaults derived from these settings."""
        return {
            "restart_policy": self.restart_policy,
            "max_restarts": self.max_restarts,
            "restart_delay_s": self.restart_delay_s,
            "call_timeout_s": self.call_timeout_s,
        }
