import os
import re
import sys
import shutil
import logging
from datetime import datetime
from pathlib import Path
from typing import List, Mapping, Optional, Tuple

from ..core import config
from ..core.config import Settings, atomic_write_text, ensure_dir
from ..core.versions import VersionId
from . import php_manager

logger = logging.getLogger(__name__)

SHELL_ZSH = "zsh"
SHELL_BASH = "bash"
SHELL_FISH = "fish"
SHELL_OTHER = "sh"
SUPPORTED_SHELLS = (SHELL_ZSH, SHELL_BASH, SHELL_FISH, SHELL_OTHER)

BACKUP_SUFFIX = ".bak."
BACKUP_TIME_FORMAT = "%Y%m%d%H%M%S%f"

DISABLED_PREFIX = "# disabled by phpswitch: "

# Profiles are not always UTF-8; undecodable bytes must survive a rewrite
PROFILE_ENCODING_ERRORS = "surrogateescape"

# A PATH line outside the managed block that puts Homebrew PHP first
_LEGACY_PATH_RE = re.compile(
    r'^\s*(?:export\s+PATH=|PATH=|set\s+-gx\s+PATH\b|fish_add_path\b).*?/opt/php(?:@\d+\.\d+)?/s?bin'
)


# --- Shell Detection ---

def detect_shell(env: Optional[Mapping[str, str]] = None, platform_name: Optional[str] = None) -> str:
    """Picks the user's shell from $SHELL, falling back to zsh on macOS and bash elsewhere."""
    env = os.environ if env is None else env
    platform_name = sys.platform if platform_name is None else platform_name

    shell_path = env.get('SHELL', '')
    shell_name = Path(shell_path).name if shell_path else ''
    for kind in (SHELL_ZSH, SHELL_BASH, SHELL_FISH):
        if kind in shell_name:
            return kind
    if shell_name:
        return SHELL_OTHER
    return SHELL_ZSH if platform_name == 'darwin' else SHELL_BASH


def get_rc_file(shell_kind: str, home: Path) -> Path:
    """Profile file for a shell. The file may not exist yet."""
    if shell_kind == SHELL_ZSH:
        zshrc = home / '.zshrc'
        zprofile = home / '.zprofile'
        if not zshrc.exists() and zprofile.exists():
            return zprofile
        return zshrc
    if shell_kind == SHELL_BASH:
        for name in ('.bashrc', '.bash_profile', '.profile'):
            candidate = home / name
            if candidate.exists():
                return candidate
        return home / '.bashrc'
    if shell_kind == SHELL_FISH:
        return home / '.config' / 'fish' / 'config.fish'
    return home / '.profile'


# --- Managed Block Rendering ---

def render_managed_block(version: VersionId, shell_kind: str, settings: Settings) -> str:
    """The block phpswitch owns in a profile. Identical inputs give identical text."""
    paths = php_manager.get_php_version_paths(version, settings)
    bin_dir, sbin_dir = paths['bin'], paths['sbin']
    lines = [config.MANAGED_BLOCK_BEGIN, f"# PHP version: {version}"]
    if shell_kind == SHELL_FISH:
        lines.append(f'set -gx PATH "{bin_dir}" "{sbin_dir}" $PATH')
    else:
        lines.append(f'export PATH="{bin_dir}:{sbin_dir}:$PATH"')
        lines.append("hash -r 2>/dev/null || rehash 2>/dev/null || true")
    lines.append(config.MANAGED_BLOCK_END)
    return "\n".join(lines) + "\n"


def render_path_export(version: VersionId, shell_kind: str, settings: Settings) -> str:
    """Shell code that puts a version first on PATH in the current session."""
    block = render_managed_block(version, shell_kind, settings)
    return "\n".join(line for line in block.splitlines() if not line.startswith('#')) + "\n"


# --- Text Transform ---

def find_marked_blocks(lines: List[str], begin: str, end: str) -> List[Tuple[int, int]]:
    """Returns (start, stop) index pairs, stop inclusive, for every begin/end pair.

    A begin marker without an end marker is reported as a one-line block so
    the stray marker gets removed.
    """
    blocks = []
    index = 0
    while index < len(lines):
        if lines[index].rstrip('\r\n') == begin:
            stop = index
            for candidate in range(index + 1, len(lines)):
                stripped = lines[candidate].rstrip('\r\n')
                if stripped == end:
                    stop = candidate
                    break
                if stripped == begin:
                    break
            blocks.append((index, stop))
            index = stop + 1
        else:
            index += 1
    return blocks


def _disable_legacy_path_lines(lines: List[str]) -> List[str]:
    disabled = []
    for line in lines:
        if _LEGACY_PATH_RE.match(line):
            logger.debug(f"SHELL_MANAGER: Disabling old PHP PATH line: {line.strip()}")
            disabled.append(DISABLED_PREFIX + line.lstrip())
        else:
            disabled.append(line)
    return disabled


def replace_marked_block(content: str, block: str, begin: str, end: str,
                         prepend: bool = True, disable_legacy: bool = False) -> str:
    """Puts `block` where the first begin/end pair sits, dropping any others.

    When the file has no block yet it is prepended (or appended) with a blank
    line separating it from the user's content.
    """
    lines = content.splitlines(keepends=True)
    if lines and not lines[-1].endswith('\n'):
        lines[-1] += '\n'

    blocks = find_marked_blocks(lines, begin, end)
    block_lines = block.splitlines(keepends=True)

    if blocks:
        first_start = blocks[0][0]
        kept: List[str] = []
        insert_at = None
        cursor = 0
        for start, stop in blocks:
            kept.extend(lines[cursor:start])
            if insert_at is None:
                insert_at = len(kept)
            cursor = stop + 1
        kept.extend(lines[cursor:])
        if disable_legacy:
            kept = _disable_legacy_path_lines(kept)
        logger.debug(f"SHELL_MANAGER: Replacing managed block at line {first_start + 1}")
        new_lines = kept[:insert_at] + block_lines + kept[insert_at:]
    else:
        if disable_legacy:
            lines = _disable_legacy_path_lines(lines)
        if prepend:
            new_lines = block_lines + (["\n"] + lines if lines else [])
        else:
            separator = ["\n"] if lines and lines[-1].strip() else []
            new_lines = lines + separator + block_lines
    return "".join(new_lines)


def apply_managed_block(content: str, version: VersionId, shell_kind: str, settings: Settings) -> str:
    """Pure transform of a profile's text for `version`. Applying it twice changes nothing."""
    block = render_managed_block(version, shell_kind, settings)
    return replace_marked_block(content, block, config.MANAGED_BLOCK_BEGIN, config.MANAGED_BLOCK_END,
                                prepend=True, disable_legacy=True)


def has_legacy_path_lines(content: str) -> bool:
    """True when PATH lines for Homebrew PHP exist outside the managed block."""
    lines = content.splitlines(keepends=True)
    blocks = find_marked_blocks(lines, config.MANAGED_BLOCK_BEGIN, config.MANAGED_BLOCK_END)
    inside = {i for start, stop in blocks for i in range(start, stop + 1)}
    return any(_LEGACY_PATH_RE.match(line) for i, line in enumerate(lines) if i not in inside)


# --- Backups ---

def list_backups(rc_file: Path) -> List[Path]:
    """Backups of rc_file, oldest first."""
    pattern = f"{rc_file.name}{BACKUP_SUFFIX}*"
    backups = [p for p in rc_file.parent.glob(pattern) if p.is_file() and '.tmp.' not in p.name]
    return sorted(backups, key=lambda p: (p.stat().st_mtime, p.name))


def backup_file(rc_file: Path, now: Optional[datetime] = None) -> Optional[Path]:
    """Copies rc_file to a timestamped backup readable only by the owner."""
    stamp = (now or datetime.now()).strftime(BACKUP_TIME_FORMAT)
    backup = rc_file.with_name(f"{rc_file.name}{BACKUP_SUFFIX}{stamp}")
    counter = 1
    while backup.exists():
        backup = rc_file.with_name(f"{rc_file.name}{BACKUP_SUFFIX}{stamp}-{counter}")
        counter += 1
    try:
        shutil.copyfile(rc_file, backup)
        os.chmod(backup, 0o600)
        logger.info(f"SHELL_MANAGER: Backed up {rc_file} to {backup}")
        return backup
    except OSError as e:
        logger.error(f"SHELL_MANAGER: Could not back up {rc_file}: {e}")
        return None


def prune_backups(rc_file: Path, max_backups: int) -> List[Path]:
    """Deletes the oldest backups beyond max_backups. Returns the deleted paths."""
    backups = list_backups(rc_file)
    excess = len(backups) - max_backups
    removed = []
    for old in backups[:max(excess, 0)]:
        try:
            old.unlink()
            removed.append(old)
            logger.debug(f"SHELL_MANAGER: Removed old backup {old}")
        except OSError as e:
            logger.warning(f"SHELL_MANAGER: Could not remove old backup {old}: {e}")
    return removed


# --- Public API ---

def read_profile(rc_file: Path) -> str:
    """Profile text, or "" when it does not exist yet. Raises OSError."""
    if not rc_file.exists():
        return ""
    return rc_file.read_text(encoding='utf-8', errors=PROFILE_ENCODING_ERRORS)


def write_profile(rc_file: Path, new_content: str, settings: Settings) -> Tuple[bool, str]:
    """Backs up (if enabled), prunes old backups and atomically rewrites rc_file."""
    existed = rc_file.exists()
    if existed and not os.access(rc_file, os.W_OK):
        return False, f"No write permission for {rc_file}."
    if not ensure_dir(rc_file.parent):
        return False, f"Cannot create directory {rc_file.parent}."
    if not os.access(rc_file.parent, os.W_OK):
        return False, f"No write permission for directory {rc_file.parent}."

    if existed and settings.backup_config_files:
        if backup_file(rc_file) is None:
            return False, f"Could not back up {rc_file}, not modifying it."
        prune_backups(rc_file, settings.max_backups)

    if not atomic_write_text(rc_file, new_content, errors=PROFILE_ENCODING_ERRORS):
        return False, f"Failed to write {rc_file}."
    return True, str(rc_file)


def update_path(version: VersionId, shell_kind: str, settings: Settings,
                rc_file: Optional[Path] = None) -> Tuple[bool, str]:
    """Rewrites the managed block in the shell profile for `version`.

    Returns (success, profile path or error message). A profile that already
    holds the right block is left untouched and no backup is made.
    """
    rc_file = rc_file or get_rc_file(shell_kind, settings.home)
    logger.info(f"SHELL_MANAGER: Updating {rc_file} for {version} ({shell_kind})")

    try:
        current = read_profile(rc_file)
    except OSError as e:
        return False, f"Cannot read {rc_file}: {e}"

    new_content = apply_managed_block(current, version, shell_kind, settings)
    if rc_file.exists() and new_content == current:
        logger.info(f"SHELL_MANAGER: {rc_file} already up to date.")
        return True, str(rc_file)
    return write_profile(rc_file, new_content, settings)
