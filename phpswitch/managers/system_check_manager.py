import os
import stat
import logging
from dataclasses import replace
from pathlib import Path
from typing import List, Optional, Tuple

from ..core.config import Settings, ensure_dir, save_settings
from ..core.system_utils import find_executables

logger = logging.getLogger(__name__)

# Used when the configured cache directory cannot be made writable
ALTERNATIVE_CACHE_NAME = '.phpswitch_cache'


def _is_writable(path: Path) -> bool:
    if path.is_dir():
        return os.access(path, os.W_OK | os.X_OK)
    return os.access(path, os.W_OK)


def check_dependencies(settings: Settings, path_value: Optional[str] = None) -> List[str]:
    """Problems that stop phpswitch from working at all. Empty when everything is usable."""
    problems = []
    path_value = os.environ.get('PATH', '') if path_value is None else path_value
    if not find_executables('brew', path_value):
        problems.append("Homebrew (brew) was not found on PATH. Install it from https://brew.sh")

    prefix = settings.brew_prefix
    if not prefix.is_dir():
        problems.append(f"Homebrew prefix {prefix} does not exist.")
    elif not _is_writable(prefix):
        problems.append(f"Homebrew prefix {prefix} is not writable, brew link will fail.")

    cache_dir = settings.cache_dir
    if not ensure_dir(cache_dir):
        problems.append(f"Cache directory {cache_dir} cannot be created.")
    elif not _is_writable(cache_dir):
        problems.append(f"Cache directory {cache_dir} is not writable. Run `phpswitch fix-permissions`.")

    if settings.config_file.exists() and not _is_writable(settings.config_file):
        problems.append(f"Config file {settings.config_file} is not writable. Run `phpswitch fix-permissions`.")

    for problem in problems:
        logger.debug(f"SYSTEM_CHECK_MANAGER: {problem}")
    return problems


def grant_user_write(path: Path) -> bool:
    """Adds owner read/write (and search for directories) to `path`. Returns whether it is writable now."""
    extra = stat.S_IRUSR | stat.S_IWUSR
    if path.is_dir():
        extra |= stat.S_IXUSR
    try:
        mode = stat.S_IMODE(path.stat().st_mode)
        if mode & extra != extra:
            os.chmod(path, mode | extra)
            logger.info(f"SYSTEM_CHECK_MANAGER: Changed mode of {path} to {oct(mode | extra)}")
    except OSError as e:
        logger.warning(f"SYSTEM_CHECK_MANAGER: Could not change mode of {path}: {e}")
        return False
    return _is_writable(path)


def _fix_cache_dir(cache_dir: Path) -> bool:
    if not ensure_dir(cache_dir) or not grant_user_write(cache_dir):
        return False
    try:
        entries = [entry for entry in cache_dir.iterdir() if entry.is_file()]
    except OSError as e:
        logger.warning(f"SYSTEM_CHECK_MANAGER: Cannot list {cache_dir}: {e}")
        return False
    return all([grant_user_write(entry) for entry in entries])


def fix_permissions(settings: Settings) -> Tuple[bool, List[str]]:
    """Makes the config file and the cache directory (and its files) writable for the user.

    When the cache directory stays unusable, a cache under the home directory
    is created and saved as CACHE_DIRECTORY in the config file. Nothing is run
    with elevated privileges.

    Returns:
        (success, messages describing what was done or what is still broken).
    """
    messages = []
    success = True

    config_file = settings.config_file
    if config_file.exists():
        if grant_user_write(config_file):
            messages.append(f"Config file {config_file} is writable.")
        else:
            success = False
            messages.append(f"Config file {config_file} is still not writable. Check its owner.")

    cache_dir = settings.cache_dir
    if _fix_cache_dir(cache_dir):
        messages.append(f"Cache directory {cache_dir} is writable.")
        return success, messages

    alternative = settings.home / ALTERNATIVE_CACHE_NAME
    if alternative == cache_dir or not _fix_cache_dir(alternative):
        messages.append(f"Cache directory {cache_dir} is not writable and no alternative could be set up.")
        return False, messages

    if not save_settings(replace(settings, cache_directory=str(alternative))):
        messages.append(f"Cache directory {alternative} is usable but {config_file} could not be updated.")
        return False, messages
    logger.info(f"SYSTEM_CHECK_MANAGER: Switched cache directory from {cache_dir} to {alternative}")
    messages.append(f"Cache directory {cache_dir} is not writable, now using {alternative} "
                    f"(CACHE_DIRECTORY saved to {config_file}).")
    return success, messages
