"""Runtime configuration for tars."""

import json
import logging
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

logger = logging.getLogger(__name__)

# Environment variable -> config field
ENV_OVERRIDES = {
    "GEMINI_MODEL": "model",
    "HEARTBEAT_INTERVAL_SEC": "heartbeat_interval_s",
    "TARS_IDLE_TIMEOUT_SEC": "idle_timeout_s",
    "TARS_TOTAL_TIMEOUT_SEC": "total_timeout_s",
    "TARS_LOG_LEVEL": "log_level",
}


def default_home() -> Path:
    return Path.home() / ".tars"


class TarsConfig(BaseModel):
    """Configuration shared by every component.

    Built once at startup and passed to each constructor; nothing in the
    core looks configuration up on its own.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    home_dir: Path = Field(default_factory=default_home)
    agent_command: list[str] = Field(default_factory=lambda: ["gemini"], min_length=1)
    model: str = "auto"
    heartbeat_interval_s: int = Field(default=300, ge=1)
    idle_timeout_s: float = Field(
        default=300,
        gt=0,
        description="Kill the agent after this many seconds without output.",
    )
    total_timeout_s: float = Field(
        default=1800,
        gt=0,
        description="Hard ceiling for a single invocation (default 1800=30min). Covers full agentic workflows including tool use.",
    )
    session_corruption_exit_code: int = 42
    compaction_threshold_bytes: int = Field(default=50 * 1024, ge=0)
    keep_thoughts: int = Field(default=3, ge=0)
    extensions: list[str] = Field(default_factory=list)
    log_level: str = "INFO"

    @property
    def data_dir(self) -> Path:
        return self.home_dir / "data"

    @property
    def session_file(self) -> Path:
        return self.data_dir / "session.json"

    @property
    def task_file(self) -> Path:
        return self.data_dir / "tasks.json"

    @property
    def tmp_dir(self) -> Path:
        return self.data_dir / "tmp"

    @property
    def uploads_dir(self) -> Path:
        return self.data_dir / "uploads"

    @property
    def logs_dir(self) -> Path:
        return self.home_dir / "logs"

    @property
    def config_file(self) -> Path:
        return self.home_dir / "config.json"

    @classmethod
    def load(cls, environ: Mapping[str, str] | None = None, **overrides: Any) -> "TarsConfig":
        """Build the config from ``<home>/config.json`` and the environment.

        Precedence, lowest first: defaults, config.json, environment,
        keyword overrides.
        """
        env = os.environ if environ is None else environ
        home = Path(env["TARS_HOME"]).expanduser() if env.get("TARS_HOME") else default_home()

        values: dict[str, Any] = {}
        config_file = home / "config.json"
        if config_file.exists():
            try:
                raw = json.loads(config_file.read_text())
                if isinstance(raw, dict):
                    values.update(raw)
                else:
                    logger.warning("Ignoring %s: expected a JSON object", config_file)
            except (OSError, json.JSONDecodeError) as e:
                logger.warning("Could not read config file %s: %s", config_file, e)

        # config.json keys are camelCase; normalise to field names
        fields: dict[str, Any] = {}
        for key, value in values.items():
            name = _field_for_key(key)
            if name:
                fields[name] = value
        # Older config.json files spell these differently
        if "geminiModel" in values:
            fields["model"] = values["geminiModel"]
        if "heartbeatIntervalSec" in values:
            fields["heartbeat_interval_s"] = values["heartbeatIntervalSec"]

        for var, name in ENV_OVERRIDES.items():
            if env.get(var):
                fields[name] = env[var]
        if env.get("TARS_AGENT_BIN"):
            fields["agent_command"] = env["TARS_AGENT_BIN"].split()

        fields["home_dir"] = home
        fields.update(overrides)

        try:
            return cls.model_validate(fields)
        except ValidationError:
            logger.error("Invalid configuration for home %s", home)
            raise

    def ensure_dirs(self) -> None:
        for path in (self.data_dir, self.tmp_dir, self.uploads_dir, self.logs_dir):
            path.mkdir(parents=True, exist_ok=True)


def _field_for_key(key: str) -> str | None:
    for name, info in TarsConfig.model_fields.items():
        if key == name or key == info.alias:
            return name
    return None
