"""
Configuration loading, environment overrides and hot reload.
"""

import hashlib
import json
import logging
import os
import threading
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

import yaml
from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from pool_event_indexer.config.models import IndexerSettings
from pool_event_indexer.config.validation import (
    IndexerSettingsValidator,
    get_env_var_mappings,
    validate_config_dict,
)

logger = logging.getLogger(__name__)

ChangeCallback = Callable[[IndexerSettings], None]

# Environment values that clear an optional setting
NULL_ENV_VALUES = ('', 'none', 'null')


class _ConfigFileWatcher(FileSystemEventHandler):
    """Reloads the manager when its file is written or atomically replaced."""

    def __init__(self, manager: 'ConfigManager', debounce_seconds: float = 1.0):
        self.manager = manager
        self.debounce_seconds = debounce_seconds
        self._last_event = 0.0

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory or event.event_type not in ('modified', 'created', 'moved'):
            return
        path = getattr(event, 'dest_path', '') or event.src_path
        if os.path.abspath(path) != self.manager.config_file_path:
            return

        now = time.monotonic()
        if now - self._last_event < self.debounce_seconds:
            return
        self._last_event = now
        self.manager.reload()


class ConfigManager:
    """
    Loads IndexerSettings from a YAML or JSON file.

    ``INDEXER_*`` environment variables override file values. A missing
    file is created with defaults. Once a configuration has validated,
    later invalid edits are reported but the last good settings stay in
    effect.
    """

    def __init__(self, config_file_path: str = "config.yaml"):
        self.config_file_path = os.path.abspath(config_file_path)
        self._config: Optional[IndexerSettings] = None
        self._fingerprint: Optional[str] = None
        self._errors: List[str] = []
        self._callbacks: List[ChangeCallback] = []
        self._observer: Optional[Observer] = None
        self._lock = threading.RLock()

    # Loading
    def load_config(self) -> IndexerSettings:
        """
        Load (or return the cached) settings.

        Raises:
            ValueError: If the file is invalid and nothing valid was loaded before
        """
        with self._lock:
            if not os.path.exists(self.config_file_path):
                self._write_defaults()

            fingerprint = self._current_fingerprint()
            if self._config is not None and fingerprint == self._fingerprint:
                return self._config

            try:
                settings = validate_config_dict(self._read_with_overrides()).to_settings()
            except (OSError, ValueError, yaml.YAMLError) as e:
                self._errors = [str(e)]
                if self._config is None:
                    raise ValueError(f"Configuration validation failed: {e}") from e
                logger.warning(f"Ignoring invalid configuration, keeping previous settings: {e}")
                return self._config

            self._config = settings
            self._fingerprint = fingerprint
            self._errors = []
            return settings

    def get_config(self) -> IndexerSettings:
        return self._config if self._config is not None else self.load_config()

    def get_validation_errors(self) -> List[str]:
        return list(self._errors)

    def is_config_valid(self) -> bool:
        return not self._errors

    def validate_config_file(self) -> Tuple[bool, List[str]]:
        """Check the file (with overrides) without touching the loaded settings."""
        if not os.path.exists(self.config_file_path):
            return False, ["Configuration file does not exist"]
        try:
            settings = validate_config_dict(self._read_with_overrides()).to_settings()
        except (OSError, ValueError, yaml.YAMLError) as e:
            return False, [str(e)]

        errors = settings.validate()
        return not errors, errors

    # Hot reload
    def add_change_callback(self, callback: ChangeCallback) -> None:
        self._callbacks.append(callback)

    def remove_change_callback(self, callback: ChangeCallback) -> None:
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    def reload(self) -> bool:
        """
        Re-read the file and notify callbacks when the settings changed.

        Runs on the watcher thread; callbacks must hand work over to the
        event loop themselves.

        Returns:
            True if new settings were applied
        """
        with self._lock:
            if self._fingerprint == self._current_fingerprint():
                return False
            previous = self._config
            try:
                current = self.load_config()
            except ValueError as e:
                logger.error(f"Configuration reload failed: {e}")
                return False

        if current is previous or current == previous:
            return False

        logger.info(f"Reloaded configuration from {self.config_file_path}")
        for callback in list(self._callbacks):
            try:
                callback(current)
            except Exception as e:
                logger.error(f"Configuration change callback {callback!r} failed: {e}")
        return True

    def start_hot_reload(self) -> None:
        if self._observer is not None:
            return
        watch_dir = os.path.dirname(self.config_file_path)
        self._observer = Observer()
        self._observer.schedule(_ConfigFileWatcher(self), watch_dir, recursive=False)
        self._observer.daemon = True
        self._observer.start()
        logger.info(f"Watching {self.config_file_path} for changes")

    def stop_hot_reload(self) -> None:
        if self._observer is None:
            return
        self._observer.stop()
        self._observer.join(timeout=5)
        self._observer = None

    def is_hot_reload_active(self) -> bool:
        return self._observer is not None and self._observer.is_alive()

    # File handling
    def _read_file(self) -> Dict[str, Any]:
        with open(self.config_file_path, 'r') as f:
            if self.config_file_path.endswith(('.yaml', '.yml')):
                data = yaml.safe_load(f)
            elif self.config_file_path.endswith('.json'):
                data = json.load(f)
            else:
                raise ValueError(f"Unsupported config file format: {self.config_file_path}")

        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ValueError("Configuration file must contain a mapping")
        return data

    def _read_with_overrides(self) -> Dict[str, Any]:
        data = self._read_file()
        for env_var, dotted_path in get_env_var_mappings().items():
            value = os.environ.get(env_var)
            if value is None:
                continue
            *parents, leaf = dotted_path.split('.')
            section = data
            for key in parents:
                if not isinstance(section.get(key), dict):
                    section[key] = {}
                section = section[key]
            # Pydantic coerces numeric and boolean strings
            section[leaf] = None if value.strip().lower() in NULL_ENV_VALUES else value
        return data

    def _write_defaults(self) -> None:
        defaults = IndexerSettingsValidator().model_dump(mode='json')
        for domain in defaults.get('domains', {}).values():
            domain.pop('name', None)

        directory = os.path.dirname(self.config_file_path)
        os.makedirs(directory, exist_ok=True)
        with open(self.config_file_path, 'w') as f:
            yaml.safe_dump(defaults, f, default_flow_style=False, sort_keys=False)
        logger.info(f"Wrote default configuration to {self.config_file_path}")

    def _current_fingerprint(self) -> str:
        digest = hashlib.sha256()
        try:
            with open(self.config_file_path, 'rb') as f:
                digest.update(f.read())
        except OSError:
            return ""
        for env_var in sorted(get_env_var_mappings()):
            if env_var in os.environ:
                digest.update(f"\0{env_var}={os.environ[env_var]}".encode())
        return digest.hexdigest()
