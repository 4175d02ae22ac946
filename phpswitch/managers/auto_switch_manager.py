import os
import logging
from pathlib import Path
from typing import Dict, Optional, Tuple

from ..core import config
from ..core.config import Settings, ensure_dir, atomic_write_text
from . import shell_manager

logger = logging.getLogger(__name__)

# Cached "no project version here"
NO_VERSION = ""


# --- Directory Cache ---

def _directory_cache_file(settings: Settings) -> Path:
    return settings.cache_dir / config.DIRECTORY_CACHE_NAME


def load_directory_cache(settings: Settings) -> Dict[str, str]:
    """Reads `path:version` lines. The last colon separates the two."""
    cache_file = _directory_cache_file(settings)
    entries: Dict[str, str] = {}
    try:
        lines = cache_file.read_text(encoding='utf-8', errors='surrogateescape').splitlines()
    except FileNotFoundError:
        return entries
    except OSError as e:
        logger.warning(f"AUTO_SWITCH_MANAGER: Cannot read {cache_file}: {e}")
        return entries
    for line in lines:
        if ':' not in line:
            continue
        path, _, version = line.rpartition(':')
        if path:
            entries[path] = version.strip()
    return entries


def lookup_directory(settings: Settings, directory: Path) -> Optional[str]:
    """Cached raw version for a directory, NO_VERSION for a cached miss, None if never seen."""
    return load_directory_cache(settings).get(str(directory))


def record_directory(settings: Settings, directory: Path, version: Optional[str]) -> bool:
    entries = load_directory_cache(settings)
    entries[str(directory)] = version or NO_VERSION
    cache_file = _directory_cache_file(settings)
    if not ensure_dir(cache_file.parent):
        return False
    content = "".join(f"{path}:{value}\n" for path, value in entries.items())
    return atomic_write_text(cache_file, content, errors='surrogateescape')


def forget_directory(settings: Settings, directory: Path) -> bool:
    """Drops cached entries for `directory` and everything below it."""
    entries = load_directory_cache(settings)
    root = str(directory)
    prefix = root.rstrip(os.sep) + os.sep
    kept = {path: value for path, value in entries.items() if path != root and not path.startswith(prefix)}
    if len(kept) == len(entries):
        return True
    logger.debug(f"AUTO_SWITCH_MANAGER: Forgetting {len(entries) - len(kept)} cached entries under {root}")
    content = "".join(f"{path}:{value}\n" for path, value in kept.items())
    return atomic_write_text(_directory_cache_file(settings), content, errors='surrogateescape')


def clear_directory_cache(settings: Settings) -> bool:
    cache_file = _directory_cache_file(settings)
    try:
        cache_file.unlink(missing_ok=True)
    except OSError as e:
        logger.error(f"AUTO_SWITCH_MANAGER: Could not remove {cache_file}: {e}")
        return False
    logger.info(f"AUTO_SWITCH_MANAGER: Cleared directory cache {cache_file}")
    return True


# --- Shell Hooks ---

def render_hook(shell_kind: str, command: str = "phpswitch") -> str:
    """Hook that runs `phpswitch auto` on directory change and applies its PATH export."""
    run = f'eval "$({command} auto --emit-shell 2>/dev/null)"'
    if shell_kind == shell_manager.SHELL_ZSH:
        body = [
            "_phpswitch_auto() {",
            f"  {run}",
            "}",
            "autoload -U add-zsh-hook",
            "add-zsh-hook chpwd _phpswitch_auto",
            "_phpswitch_auto",
        ]
    elif shell_kind == shell_manager.SHELL_BASH:
        body = [
            "_phpswitch_auto() {",
            '  if [ "$PWD" != "${_PHPSWITCH_LAST_DIR:-}" ]; then',
            '    _PHPSWITCH_LAST_DIR="$PWD"',
            f"    {run}",
            "  fi",
            "}",
            'case ";${PROMPT_COMMAND:-};" in',
            '  *";_phpswitch_auto;"*) ;;',
            '  *) PROMPT_COMMAND="_phpswitch_auto${PROMPT_COMMAND:+;$PROMPT_COMMAND}" ;;',
            "esac",
        ]
    elif shell_kind == shell_manager.SHELL_FISH:
        body = [
            "function _phpswitch_auto --on-variable PWD",
            f"  {command} auto --emit-shell 2>/dev/null | source",
            "end",
            "_phpswitch_auto",
        ]
    else:
        raise ValueError(f"Auto-switch hooks are not supported for shell '{shell_kind}'.")
    return "\n".join([config.AUTO_SWITCH_BEGIN, *body, config.AUTO_SWITCH_END]) + "\n"


def install_hook(shell_kind: str, settings: Settings, rc_file: Optional[Path] = None) -> Tuple[bool, str]:
    """Adds or refreshes the auto-switch hook at the end of the shell profile."""
    try:
        hook = render_hook(shell_kind)
    except ValueError as e:
        return False, str(e)

    rc_file = rc_file or shell_manager.get_rc_file(shell_kind, settings.home)
    try:
        current = shell_manager.read_profile(rc_file)
    except OSError as e:
        return False, f"Cannot read {rc_file}: {e}"

    new_content = shell_manager.replace_marked_block(
        current, hook, config.AUTO_SWITCH_BEGIN, config.AUTO_SWITCH_END, prepend=False)
    if rc_file.exists() and new_content == current:
        return True, str(rc_file)
    success, message = shell_manager.write_profile(rc_file, new_content, settings)
    if success:
        logger.info(f"AUTO_SWITCH_MANAGER: Installed {shell_kind} auto-switch hook in {rc_file}")
    return success, message


def is_hook_installed(shell_kind: str, settings: Settings) -> bool:
    rc_file = shell_manager.get_rc_file(shell_kind, settings.home)
    try:
        return config.AUTO_SWITCH_BEGIN in shell_manager.read_profile(rc_file)
    except OSError:
        return False