import os
import sys
import shutil
import platform
import tempfile
import configparser
import logging
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Dict, Mapping, Optional

from .errors import ConfigError
from .system_utils import run_command

logger = logging.getLogger(__name__)

# --- Base Directories ---
APP_NAME = "phpswitch"
CONFIG_FILE = Path.home() / '.phpswitch.conf'
CACHE_DIR = Path(os.environ.get('XDG_CACHE_HOME', Path.home() / '.cache')) / APP_NAME
LOG_DIR = Path(os.environ.get('XDG_STATE_HOME', Path.home() / '.local/state')) / APP_NAME / 'logs'

# --- Cache Files ---
AVAILABLE_CACHE_NAME = 'available_versions.cache'
FALLBACK_CACHE_NAME = 'fallback_versions.cache'
DIRECTORY_CACHE_NAME = 'directory_cache.txt'

# Offered when `brew search` fails and no earlier result was kept
FALLBACK_VERSIONS = ("php@7.4", "php@8.0", "php@8.1", "php@8.2", "php@8.3", "php@8.4", "php@default")

# --- Shell Profile Markers ---
MANAGED_BLOCK_BEGIN = "# BEGIN PHPSWITCH MANAGED BLOCK - DO NOT EDIT MANUALLY"
MANAGED_BLOCK_END = "# END PHPSWITCH MANAGED BLOCK"
AUTO_SWITCH_BEGIN = "# BEGIN PHPSWITCH AUTO-SWITCH HOOK"
AUTO_SWITCH_END = "# END PHPSWITCH AUTO-SWITCH HOOK"

# --- Project Marker Files (priority order) ---
PROJECT_MARKER_FILES = ('.php-version', '.phpversion', '.php')
COMPOSER_FILE = 'composer.json'
TOOL_VERSIONS_FILE = '.tool-versions'
PROJECT_WRITE_FILE = '.php-version'

# Homebrew prefix guesses when `brew --prefix` is unavailable
DEFAULT_PREFIX_ARM = '/opt/homebrew'
DEFAULT_PREFIX_INTEL = '/usr/local'
DEFAULT_PREFIX_LINUX = '/home/linuxbrew/.linuxbrew'

_CONFIG_SECTION = 'phpswitch'


@dataclass
class Settings:
    """Runtime settings, built once by load_settings() and passed to managers."""
    auto_restart_php_fpm: bool = True
    backup_config_files: bool = True
    default_php_version: str = ""
    max_backups: int = 5
    auto_switch_php_version: bool = False
    cache_directory: str = ""
    cache_ttl: int = 3600
    search_timeout: int = 10

    brew_prefix: Path = Path(DEFAULT_PREFIX_INTEL)
    home: Path = field(default_factory=Path.home)
    config_file: Path = CONFIG_FILE
    debug: bool = False

    @property
    def cache_dir(self) -> Path:
        if self.cache_directory:
            return Path(self.cache_directory).expanduser()
        return CACHE_DIR

    @property
    def bin_dir(self) -> Path:
        return self.brew_prefix / 'bin'

    @property
    def sbin_dir(self) -> Path:
        return self.brew_prefix / 'sbin'

    @property
    def opt_dir(self) -> Path:
        return self.brew_prefix / 'opt'


# Config file key -> (Settings attribute, type)
CONFIG_KEYS: Dict[str, tuple] = {
    'AUTO_RESTART_PHP_FPM': ('auto_restart_php_fpm', bool),
    'BACKUP_CONFIG_FILES': ('backup_config_files', bool),
    'DEFAULT_PHP_VERSION': ('default_php_version', str),
    'MAX_BACKUPS': ('max_backups', int),
    'AUTO_SWITCH_PHP_VERSION': ('auto_switch_php_version', bool),
    'CACHE_DIRECTORY': ('cache_directory', str),
    'CACHE_TTL': ('cache_ttl', int),
    'SEARCH_TIMEOUT': ('search_timeout', int),
}

_TRUE_VALUES = ('true', 'yes', '1', 'on')
_FALSE_VALUES = ('false', 'no', '0', 'off')


def ensure_dir(path: Path) -> bool:
    """Creates a directory if it doesn't exist."""
    if not isinstance(path, Path):
        logger.error(f"CONFIG: ensure_dir received non-Path object: {path}")
        return False
    try:
        path.mkdir(parents=True, exist_ok=True)
        return True
    except Exception as e:
        logger.error(f"CONFIG: Error creating directory {path}: {e}")
        return False


def detect_brew_prefix(env: Optional[Mapping[str, str]] = None) -> Path:
    """Finds the Homebrew prefix: $HOMEBREW_PREFIX, then `brew --prefix`, then a platform guess."""
    env = os.environ if env is None else env
    if env.get('HOMEBREW_PREFIX'):
        return Path(env['HOMEBREW_PREFIX'])

    if shutil.which('brew'):
        code, out, _ = run_command(['brew', '--prefix'], timeout=10)
        if code == 0 and out:
            return Path(out.splitlines()[0].strip())
        logger.warning("CONFIG: `brew --prefix` failed, guessing the Homebrew prefix.")

    if sys.platform == 'darwin':
        return Path(DEFAULT_PREFIX_ARM if platform.machine() == 'arm64' else DEFAULT_PREFIX_INTEL)
    return Path(DEFAULT_PREFIX_LINUX)


def _strip_quotes(value: str) -> str:
    value = value.strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in ('"', "'"):
        return value[1:-1]
    return value


def convert_value(key: str, raw: str):
    """Converts a raw config string for `key` into its typed value or raises ConfigError."""
    if key not in CONFIG_KEYS:
        raise ConfigError(f"Unknown configuration key: {key}")
    _, value_type = CONFIG_KEYS[key]
    value = _strip_quotes(raw)
    if value_type is bool:
        lowered = value.lower()
        if lowered in _TRUE_VALUES:
            return True
        if lowered in _FALSE_VALUES:
            return False
        raise ConfigError(f"{key} must be true or false, got '{value}'.")
    if value_type is int:
        try:
            number = int(value)
        except ValueError:
            raise ConfigError(f"{key} must be a whole number, got '{value}'.") from None
        if number < 0:
            raise ConfigError(f"{key} must not be negative.")
        return number
    if any(ord(c) < 32 for c in value):
        raise ConfigError(f"{key} contains control characters.")
    return value


def parse_config_text(content: str) -> Dict[str, str]:
    """Reads KEY=value lines. Nothing in the file is ever executed."""
    parser = configparser.ConfigParser(
        interpolation=None,
        strict=False,
        comment_prefixes=('#', ';'),
        delimiters=('=',),
        inline_comment_prefixes=None
    )
    parser.optionxform = str  # keep key case
    try:
        parser.read_string(content)
    except configparser.MissingSectionHeaderError:
        parser.read_string(f"[{_CONFIG_SECTION}]\n" + content)

    values: Dict[str, str] = {}
    for section in parser.sections():
        for key, value in parser.items(section):
            values[key.strip().upper()] = value if value is not None else ""
    return values


def load_settings(config_file: Optional[Path] = None,
                  env: Optional[Mapping[str, str]] = None,
                  create: bool = True,
                  **overrides) -> Settings:
    """Builds Settings from the config file. Bad values are logged and left at their defaults."""
    config_file = Path(config_file) if config_file else CONFIG_FILE
    settings = Settings(config_file=config_file)

    if config_file.is_file():
        try:
            raw_values = parse_config_text(config_file.read_text(encoding='utf-8', errors='replace'))
        except (OSError, configparser.Error) as e:
            logger.error(f"CONFIG: Could not read {config_file}: {e}")
            raw_values = {}
        for key, raw in raw_values.items():
            if key not in CONFIG_KEYS:
                logger.warning(f"CONFIG: Ignoring unknown key '{key}' in {config_file}.")
                continue
            try:
                setattr(settings, CONFIG_KEYS[key][0], convert_value(key, raw))
            except ConfigError as e:
                logger.warning(f"CONFIG: {e} Using default.")
    elif create:
        logger.info(f"CONFIG: {config_file} not found, creating it with defaults.")
        save_settings(settings)

    settings.brew_prefix = detect_brew_prefix(env)
    if overrides:
        settings = replace(settings, **overrides)
    logger.debug(f"CONFIG: Loaded settings: {settings}")
    return settings


def render_config(settings: Settings) -> str:
    lines = ["# phpswitch configuration", ""]
    for key, (attr, value_type) in CONFIG_KEYS.items():
        value = getattr(settings, attr)
        if value_type is bool:
            lines.append(f"{key}={'true' if value else 'false'}")
        elif value_type is int:
            lines.append(f"{key}={value}")
        else:
            lines.append(f'{key}="{value}"')
    return "\n".join(lines) + "\n"


def save_settings(settings: Settings) -> bool:
    """Writes the config file atomically."""
    config_file = settings.config_file
    if not ensure_dir(config_file.parent):
        return False
    return atomic_write_text(config_file, render_config(settings))


def set_config_value(settings: Settings, key: str, raw_value: str) -> Settings:
    """Returns a copy of settings with one key changed. Raises ConfigError on bad input."""
    key = key.strip().upper()
    value = convert_value(key, raw_value)
    return replace(settings, **{CONFIG_KEYS[key][0]: value})


def settings_as_dict(settings: Settings) -> Dict[str, object]:
    names = {f.name for f in fields(settings)}
    return {key: getattr(settings, attr) for key, (attr, _) in CONFIG_KEYS.items() if attr in names}


def atomic_write_text(path: Path, content: str, mode: Optional[int] = None, errors: str = "strict") -> bool:
    """Writes content to a temp file next to `path` and renames it into place.

    `errors` is passed to the encoder, so text read with surrogateescape can be
    written back byte for byte.
    """
    temp_path_obj = None
    try:
        with tempfile.NamedTemporaryFile('w', dir=path.parent, delete=False, encoding='utf-8', errors=errors, prefix=f"{path.name}.tmp.") as temp_f:
            temp_path_obj = Path(temp_f.name)
            temp_f.write(content)
            temp_f.flush()
            os.fsync(temp_f.fileno())

        if path.exists():  # keep permissions of the file being replaced
            shutil.copymode(path, temp_path_obj)
        else:
            os.chmod(temp_path_obj, mode if mode is not None else 0o644)

        os.replace(temp_path_obj, path)
        logger.debug(f"CONFIG: Wrote {path}")
        return True
    except Exception as e:
        logger.error(f"CONFIG: Error writing {path}: {e}", exc_info=True)
        if temp_path_obj and temp_path_obj.exists():
            temp_path_obj.unlink(missing_ok=True)
        return False
