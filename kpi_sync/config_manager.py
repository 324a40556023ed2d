"""
Configuration Manager Module
Reads config/config.yaml, expanding environment references, and hands out its sections.
"""

import os
import re
from pathlib import Path
from typing import Dict, List, Optional

import yaml
from dotenv import load_dotenv


DEFAULT_THRESHOLDS = {'green': 90, 'yellow': 70}

ENV_REFERENCE = re.compile(r'\$\{([A-Z_][A-Z0-9_]*)(?::-([^}]*))?\}')


def expand_env_references(text: str) -> str:
    """
    Expand `${NAME}` and `${NAME:-fallback}` using the process environment.

    References to unset variables without a fallback are kept verbatim.
    """
    def expand(match):
        value = os.getenv(match.group(1))
        if value is not None:
            return value
        if match.group(2) is not None:
            return match.group(2)
        return match.group(0)

    return ENV_REFERENCE.sub(expand, text)


def config_search_paths() -> List[Path]:
    """Candidate config directories, most specific first."""
    if os.getenv('CONFIG_DIR'):
        return [Path(os.environ['CONFIG_DIR'])]
    return [
        Path(__file__).parent.parent / 'config',
        Path.cwd() / 'config',
        Path('/app/config'),  # container image
    ]


class ConfigManager:
    """Process-wide view of the YAML configuration."""

    _instance = None
    _config: Dict = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self):
        if self._config is None:
            self._config = self._read()

    def _read(self) -> Dict:
        load_dotenv()

        for directory in config_search_paths():
            if directory.exists():
                config_file = directory / 'config.yaml'
                if not config_file.exists():
                    return {}
                raw = config_file.read_text(encoding='utf-8')
                return yaml.safe_load(expand_env_references(raw)) or {}

        raise FileNotFoundError("Configuration directory not found")

    def _section(self, name: str) -> Dict:
        return self._config.get(name) or {}

    def reload(self) -> None:
        """Re-read the configuration file, picking up environment changes."""
        self._config = self._read()

    # ========================================
    # Section Getters
    # ========================================

    def get_database_config(self) -> Dict:
        return self._section('database')

    def get_provider_config(self, provider: str) -> Dict:
        """
        Client settings for one provider.

        Args:
            provider: Integration type ('hubspot', 'jira', 'sheets')

        Returns:
            `integrations.<provider>` layered over `integrations.defaults`
        """
        integrations = self._section('integrations')
        settings = dict(integrations.get('defaults') or {})
        settings.update(integrations.get(provider) or {})
        return settings

    def get_sync_config(self) -> Dict:
        return self._section('sync')

    def get_default_thresholds(self) -> Dict[str, float]:
        """Green/yellow thresholds for metrics that carry none of their own."""
        configured = self._section('scoring').get('default_thresholds') or {}
        return {key: configured.get(key, value) for key, value in DEFAULT_THRESHOLDS.items()}

    def get_cache_config(self) -> Dict:
        return self._section('cache')

    def get_logging_config(self) -> Dict:
        return self._section('logging')

    def get_scheduler_config(self) -> Dict:
        return self._section('scheduler')

    def get_timezone(self) -> Optional[str]:
        """Timezone name used to compute 'now' for date placeholders."""
        return self.get_sync_config().get('timezone')
