"""
Configuration loading and management for Group Flatten Sync.

Configuration comes from an optional YAML file, environment variables for
sensitive fields, and command line overrides, in increasing order of
precedence. The result is frozen into a SyncConfig that is built once per
run and passed by reference to every stage.
"""

import os
import copy
import yaml
import logging
from yaml.constructor import ConstructorError
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, Any, Iterable, List, Mapping, Optional, Tuple

logger = logging.getLogger(__name__)

DEFAULT_SOURCE_SUFFIX = '-NESTED'
DEFAULT_TARGET_SUFFIX = '-UNNESTED'


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing required fields."""
    pass


class UniqueKeyLoader(yaml.SafeLoader):
    """SafeLoader that rejects a key repeated within one mapping."""

    def construct_mapping(self, node, deep=False):
        if isinstance(node, yaml.MappingNode):
            self.flatten_mapping(node)
            seen = set()
            for key_node, _ in node.value:
                key = self.construct_object(key_node, deep=deep)
                try:
                    duplicate = key in seen
                except TypeError:
                    continue
                if duplicate:
                    raise ConstructorError("while constructing a mapping", node.start_mark,
                                           f"found duplicate key {key!r}", key_node.start_mark)
                seen.add(key)
        return super().construct_mapping(node, deep=deep)


@dataclass(frozen=True)
class SyncConfig:
    """Resolved, read-only settings for one run."""

    ldap: Mapping[str, Any]
    search_base: Optional[str] = None
    server: Optional[str] = None
    source_suffix: str = DEFAULT_SOURCE_SUFFIX
    target_suffix: str = DEFAULT_TARGET_SUFFIX
    legacy_pairs: Mapping[str, Tuple[str, ...]] = field(default_factory=lambda: MappingProxyType({}))
    dry_run: bool = False
    pass_through: bool = False
    verbose: bool = False
    logging: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    error_handling: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    notifications: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))


def _split_names(value: str) -> List[str]:
    return [name.strip() for name in value.split(',') if name.strip()]


def parse_legacy_pairs(entries: Any) -> Dict[str, Tuple[str, ...]]:
    """
    Normalize legacy pairs into a source name -> target names multi-map.

    Accepts any of:
        - a list of CLI strings: ["src=t1,t2", "src=t3,other=t4"]
        - a mapping: {"src": "t1"} or {"src": ["t1", "t2"]}
        - a list of mappings: [{"source": "src", "target": "t1"}]

    Repeated sources are merged in order; a target listed twice for the same
    source is kept once.

    Raises:
        ConfigurationError: If an entry cannot be parsed
    """
    pairs: Dict[str, List[str]] = {}

    def add(source: Any, targets: Iterable[Any]):
        source = str(source).strip() if source is not None else ''
        if not source:
            raise ConfigurationError(f"Legacy pair has an empty source group: {entries!r}")
        names = [str(t).strip() for t in targets if t is not None and str(t).strip()]
        if not names:
            raise ConfigurationError(f"Legacy pair for {source} has no target group")
        bucket = pairs.setdefault(source, [])
        for name in names:
            if name not in bucket:
                bucket.append(name)

    if not entries:
        return {}

    if isinstance(entries, Mapping):
        for source, targets in entries.items():
            if isinstance(targets, str):
                targets = _split_names(targets)
            elif not isinstance(targets, (list, tuple)):
                raise ConfigurationError(f"Invalid legacy targets for {source}: {targets!r}")
            add(source, targets)
        return {source: tuple(targets) for source, targets in pairs.items()}

    if isinstance(entries, str):
        entries = [entries]

    for entry in entries:
        if isinstance(entry, str):
            # "a=x,y,b=z": a name without '=' is one more target for the previous source
            parts = _split_names(entry)
            if not parts or '=' not in parts[0]:
                raise ConfigurationError(f"Legacy pair must look like SOURCE=TARGET[,TARGET...]: {entry!r}")
            grouped: List[Tuple[str, List[str]]] = []
            for part in parts:
                if '=' in part:
                    source, _, target = part.partition('=')
                    grouped.append((source, [target]))
                else:
                    grouped[-1][1].append(part)
            for source, targets in grouped:
                add(source, targets)
        elif isinstance(entry, Mapping):
            targets = entry.get('targets', entry.get('target'))
            if isinstance(targets, str):
                targets = _split_names(targets)
            add(entry.get('source'), targets or [])
        else:
            raise ConfigurationError(f"Invalid legacy pair entry: {entry!r}")

    return {source: tuple(targets) for source, targets in pairs.items()}


def _merge_legacy_pairs(*sources: Dict[str, Tuple[str, ...]]) -> Dict[str, Tuple[str, ...]]:
    merged: Dict[str, List[str]] = {}
    for mapping in sources:
        for source, targets in mapping.items():
            bucket = merged.setdefault(source, [])
            bucket.extend(t for t in targets if t not in bucket)
    return {source: tuple(targets) for source, targets in merged.items()}


class ConfigLoader:
    """Handles loading and validation of application configuration."""

    # Environment variable mappings for connection and sensitive fields
    ENV_OVERRIDES = {
        'ldap.server_url': 'LDAP_SERVER_URL',
        'ldap.bind_dn': 'LDAP_BIND_DN',
        'ldap.bind_password': 'LDAP_BIND_PASSWORD',
        'notifications.smtp_password': 'SMTP_PASSWORD',
    }

    def __init__(self, config_path: Optional[str] = None, overrides: Optional[Dict[str, Any]] = None):
        """
        Initialize config loader.

        Args:
            config_path: Path to config file. If None, uses CONFIG_PATH env var or 'config.yaml'
            overrides: Values from the command line; None entries are ignored
        """
        self.explicit_path = config_path is not None or 'CONFIG_PATH' in os.environ
        self.config_path = config_path or os.getenv('CONFIG_PATH', 'config.yaml')
        self.overrides = {k: v for k, v in (overrides or {}).items() if v is not None}
        self.config: Dict[str, Any] = {}

    def load(self) -> SyncConfig:
        """
        Load configuration from file, environment and overrides.

        A missing file is only an error when a path was given explicitly;
        otherwise the environment and command line must supply everything.

        Returns:
            Frozen SyncConfig

        Raises:
            ConfigurationError: If the file is unreadable or validation fails
        """
        self.config = self._read_file()

        self._apply_env_overrides()
        self._apply_cli_overrides()
        self._validate()
        self._apply_defaults()

        return self._freeze()

    def _read_file(self) -> Dict[str, Any]:
        try:
            with open(self.config_path, 'r') as f:
                data = yaml.load(f, Loader=UniqueKeyLoader) or {}
        except FileNotFoundError:
            if self.explicit_path:
                raise ConfigurationError(f"Configuration file not found: {self.config_path}")
            logger.debug(f"No configuration file at {self.config_path}, using environment and arguments")
            return {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file: {e}")

        if not isinstance(data, dict):
            raise ConfigurationError(f"Configuration file must contain a mapping: {self.config_path}")

        logger.debug(f"Configuration read from {self.config_path}")
        return data

    def _apply_env_overrides(self):
        """Apply environment variable overrides for connection and sensitive fields."""
        for config_key, env_var in self.ENV_OVERRIDES.items():
            env_value = os.getenv(env_var)
            if env_value:
                self._set_nested_value(self.config, config_key, env_value)
                logger.debug(f"Applied environment override for {config_key}")

    def _apply_cli_overrides(self):
        """Command line values win over file and environment."""
        sync_config = self.config.setdefault('sync', {}) or {}
        self.config['sync'] = sync_config

        for key in ('search_base', 'server', 'source_suffix', 'target_suffix'):
            if key in self.overrides:
                sync_config[key] = self.overrides[key]

        # Flags only ever switch a mode on
        for key in ('dry_run', 'pass_through', 'verbose'):
            if self.overrides.get(key):
                sync_config[key] = True

        if self.overrides.get('legacy_pairs'):
            sync_config['cli_legacy_pairs'] = self.overrides['legacy_pairs']

    def _set_nested_value(self, config: Dict, key_path: str, value: Any):
        """Set a nested configuration value using dot notation."""
        keys = key_path.split('.')
        current = config
        for key in keys[:-1]:
            if not isinstance(current.get(key), dict):
                current[key] = {}
            current = current[key]
        current[keys[-1]] = value

    def _validate(self):
        """Validate required configuration fields."""
        errors = []

        ldap_config = self.config.get('ldap') or {}
        for required in ('server_url', 'bind_dn', 'bind_password'):
            if not ldap_config.get(required):
                errors.append(f"Missing required LDAP field: {required}")

        sync_config = self.config.get('sync') or {}
        source_suffix = sync_config.get('source_suffix', DEFAULT_SOURCE_SUFFIX)
        target_suffix = sync_config.get('target_suffix', DEFAULT_TARGET_SUFFIX)
        if not source_suffix or not target_suffix:
            errors.append("Source and target suffixes must not be empty")
        elif source_suffix.lower() == target_suffix.lower():
            errors.append(f"Source and target suffixes must differ (both are {source_suffix})")

        try:
            parse_legacy_pairs(sync_config.get('legacy_pairs'))
            parse_legacy_pairs(sync_config.get('cli_legacy_pairs'))
        except ConfigurationError as e:
            errors.append(str(e))

        if errors:
            raise ConfigurationError("Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors))

    def _apply_defaults(self):
        """Apply default values for optional configuration fields."""
        ldap_defaults = {
            'use_ssl': str(self.config['ldap']['server_url']).lower().startswith('ldaps://'),
            'start_tls': False,
            'verify_ssl': True,
            'connection_timeout': 10,
            'receive_timeout': 30,
            'page_size': 1000,
        }
        ldap_config = self.config.setdefault('ldap', {})
        for key, value in ldap_defaults.items():
            ldap_config.setdefault(key, value)

        logging_defaults = {
            'level': 'INFO',
            'log_dir': 'logs',
            'rotation': 'daily',
            'retention_days': 7,
            'console_output': True,
        }
        logging_config = self.config.setdefault('logging', {}) or {}
        self.config['logging'] = logging_config
        for key, value in logging_defaults.items():
            logging_config.setdefault(key, value)

        error_defaults = {
            'max_retries': 3,
            'retry_wait_seconds': 5,
        }
        error_config = self.config.setdefault('error_handling', {}) or {}
        self.config['error_handling'] = error_config
        for key, value in error_defaults.items():
            error_config.setdefault(key, value)

        notification_defaults = {
            'enable_email': False,
            'email_on_failure': True,
            'email_on_success': False,
            'smtp_port': 587,
            'smtp_tls': True,
        }
        notification_config = self.config.setdefault('notifications', {}) or {}
        self.config['notifications'] = notification_config
        for key, value in notification_defaults.items():
            notification_config.setdefault(key, value)

    def _freeze(self) -> SyncConfig:
        sync_config = self.config['sync']
        legacy_pairs = _merge_legacy_pairs(
            parse_legacy_pairs(sync_config.get('legacy_pairs')),
            parse_legacy_pairs(sync_config.get('cli_legacy_pairs')),
        )

        return SyncConfig(
            ldap=MappingProxyType(copy.deepcopy(self.config['ldap'])),
            search_base=sync_config.get('search_base') or None,
            server=sync_config.get('server') or None,
            source_suffix=sync_config.get('source_suffix', DEFAULT_SOURCE_SUFFIX),
            target_suffix=sync_config.get('target_suffix', DEFAULT_TARGET_SUFFIX),
            legacy_pairs=MappingProxyType(legacy_pairs),
            dry_run=bool(sync_config.get('dry_run', False)),
            pass_through=bool(sync_config.get('pass_through', False)),
            verbose=bool(sync_config.get('verbose', False)),
            logging=MappingProxyType(copy.deepcopy(self.config['logging'])),
            error_handling=MappingProxyType(copy.deepcopy(self.config['error_handling'])),
            notifications=MappingProxyType(copy.deepcopy(self.config['notifications'])),
        )


def load_config(config_path: Optional[str] = None, overrides: Optional[Dict[str, Any]] = None) -> SyncConfig:
    """
    Convenience function to load configuration.

    Args:
        config_path: Path to config file
        overrides: Command line values taking precedence over the file

    Returns:
        Loaded SyncConfig
    """
    loader = ConfigLoader(config_path, overrides)
    return loader.load()
