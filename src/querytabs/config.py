"""Configuration management for querytabs."""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
import os

import yaml


CONFIG_DIR = Path.home() / ".querytabs"
CONFIG_FILE = CONFIG_DIR / "config.yaml"
DEFAULT_STATE_FILE = CONFIG_DIR / "tabs.json"

ENV_VARS = {
    "url": "QUERYTABS_URL",
    "session_token": "QUERYTABS_SESSION_TOKEN",
    "state_file": "QUERYTABS_STATE_FILE",
}


@dataclass
class CLIConfig:
    """CLI configuration."""

    url: str = ""
    session_token: str = ""
    state_file: Path = field(default_factory=lambda: DEFAULT_STATE_FILE)

    @classmethod
    def load(cls) -> "CLIConfig":
        """Load configuration from file and environment.

        Priority (highest to lowest):
        1. Environment variables (QUERYTABS_URL, QUERYTABS_SESSION_TOKEN, QUERYTABS_STATE_FILE)
        2. Config file (~/.querytabs/config.yaml)
        3. Defaults
        """
        config = cls()

        # Load from file
        if CONFIG_FILE.exists():
            try:
                with open(CONFIG_FILE) as f:
                    data = yaml.safe_load(f) or {}
                config.url = data.get("url", "")
                config.session_token = data.get("session_token", "")
                if data.get("state_file"):
                    config.state_file = Path(data["state_file"]).expanduser()
            except (OSError, yaml.YAMLError, AttributeError):
                pass  # Ignore file errors, use defaults

        # Override with environment variables
        if env_url := os.environ.get(ENV_VARS["url"]):
            config.url = env_url
        if env_token := os.environ.get(ENV_VARS["session_token"]):
            config.session_token = env_token
        if env_state := os.environ.get(ENV_VARS["state_file"]):
            config.state_file = Path(env_state).expanduser()

        return config

    def save(self) -> None:
        """Save configuration to file."""
        CONFIG_FILE.parent.mkdir(parents=True, exist_ok=True)

        data = {
            "url": self.url,
            "session_token": self.session_token,
            "state_file": str(self.state_file),
        }

        with open(CONFIG_FILE, "w") as f:
            yaml.dump(data, f, default_flow_style=False)

    @staticmethod
    def _normalize_key(key: str) -> str:
        key_normalized = key.lower().replace("-", "_")
        if key_normalized in ("session_token", "token", "session"):
            return "session_token"
        if key_normalized in ("url", "state_file"):
            return key_normalized
        raise ValueError(f"Unknown config key: {key}")

    def set_value(self, key: str, value: str) -> str:
        """Set and save a configuration value. Returns the normalized key."""
        key_normalized = self._normalize_key(key)

        if key_normalized == "state_file":
            self.state_file = Path(value).expanduser()
        else:
            setattr(self, key_normalized, value)

        self.save()
        return key_normalized

    def get_value(self, key: str) -> str:
        """Get a configuration value."""
        return str(getattr(self, self._normalize_key(key)))

    def env_overrides(self) -> list[str]:
        """Keys whose value currently comes from the environment."""
        return [key for key, name in ENV_VARS.items() if os.environ.get(name)]

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for display."""
        return {
            "url": self.url,
            "session_token": self._mask_key(self.session_token) if self.session_token else "",
            "state_file": str(self.state_file),
        }

    @staticmethod
    def _mask_key(key: str) -> str:
        """Mask a secret for display."""
        if len(key) <= 8:
            return "*" * len(key)
        return key[:4] + "*" * (len(key) - 8) + key[-4:]

    def validate(self) -> list[str]:
        """Validate configuration and return list of errors."""
        errors = []
        if not self.url:
            errors.append("URL not configured. Use: querytabs config set url <url>")
        if not self.session_token:
            errors.append(
                "Session token not configured. Use: querytabs config set session-token <token>"
            )
        return errors


def get_config() -> CLIConfig:
    """Get the current configuration."""
    return CLIConfig.load()
