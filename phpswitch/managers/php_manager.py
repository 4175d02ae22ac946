import os
import re
import logging
import enum
from pathlib import Path
from typing import Dict, Optional, Set, Tuple

from ..core.config import Settings
from ..core.system_utils import run_command
from ..core.versions import VersionId, version_from_formula

logger = logging.getLogger(__name__)

_PHP_V_RE = re.compile(r'PHP (\d+)\.(\d+)')
_LINK_TARGET_RE = re.compile(r'php@(\d+)\.(\d+)')


class LinkStrategy(enum.Enum):
    STANDARD = "brew link --force"
    OVERWRITE = "brew link --overwrite"
    MANUAL = "manual symlinks"


# --- Paths ---

def get_php_version_paths(version: VersionId, settings: Settings) -> Dict[str, Path]:
    """Paths Homebrew uses for one PHP formula."""
    opt = settings.opt_dir / version.formula
    return {
        'opt': opt,
        'bin': opt / 'bin',
        'sbin': opt / 'sbin',
        'php_binary': opt / 'bin' / 'php',
        'php_fpm_binary': opt / 'sbin' / 'php-fpm',
    }


def linked_php_path(settings: Settings) -> Path:
    return settings.bin_dir / 'php'


def is_installed(version: VersionId, settings: Settings) -> bool:
    """A version counts as installed when its opt binary exists."""
    binary = get_php_version_paths(version, settings)['php_binary']
    installed = binary.is_file() or binary.is_symlink()
    logger.debug(f"PHP_MANAGER: {version} installed check at {binary}: {installed}")
    return installed


def scan_installed(settings: Settings) -> Set[VersionId]:
    """Installed versions found under opt/ without asking brew. Used where speed matters."""
    found = set()
    if not settings.opt_dir.is_dir():
        return found
    for item in settings.opt_dir.iterdir():
        version = version_from_formula(item.name)
        if version is not None and (item / 'bin' / 'php').exists():
            found.add(version)
    return found


# --- Active Version Detection ---

def version_from_link_target(target: str) -> Optional[VersionId]:
    """Reads a version out of the path `bin/php` points to."""
    match = _LINK_TARGET_RE.search(target)
    if match:
        return VersionId(int(match.group(1)), int(match.group(2)))
    if '/php/' in target:
        return VersionId.default()
    return None


def parse_php_v_output(output: str) -> Optional[Tuple[int, int]]:
    """'PHP 8.1.27 (cli) ...' -> (8, 1)"""
    match = _PHP_V_RE.search(output)
    if not match:
        return None
    return int(match.group(1)), int(match.group(2))


def get_binary_version(binary: Path) -> Optional[Tuple[int, int]]:
    code, stdout, _ = run_command([str(binary), '-v'], timeout=10)
    if code != 0:
        return None
    return parse_php_v_output(stdout)


def get_linked(settings: Settings) -> Optional[VersionId]:
    """Returns the PHP version Homebrew currently has linked, or None.

    The `bin/php` symlink is read first. When it is missing or does not name
    a version, `php -v` is asked and its major.minor matched against the
    formulae under opt/.
    """
    php_link = linked_php_path(settings)
    if php_link.is_symlink():
        try:
            target = os.readlink(php_link)
        except OSError as e:
            logger.warning(f"PHP_MANAGER: Could not read symlink {php_link}: {e}")
            target = ""
        version = version_from_link_target(target)
        if version is not None:
            logger.debug(f"PHP_MANAGER: {php_link} -> {target} ({version})")
            return version
        logger.debug(f"PHP_MANAGER: Symlink target '{target}' names no PHP formula.")

    binary = php_link if php_link.exists() else Path('php')
    reported = get_binary_version(binary)
    if reported is None:
        logger.debug("PHP_MANAGER: No active PHP found.")
        return None

    major, minor = reported
    candidate = VersionId(major, minor)
    if get_php_version_paths(candidate, settings)['opt'].exists():
        return candidate
    if get_php_version_paths(VersionId.default(), settings)['opt'].exists():
        return VersionId.default()
    logger.debug(f"PHP_MANAGER: php -v reports {major}.{minor} but no matching Homebrew formula.")
    return None


def resolve_default_alias(version: VersionId, settings: Settings) -> VersionId:
    """Maps php@X.Y to the default formula when only the unsuffixed `php` provides X.Y."""
    if version.is_default or is_installed(version, settings):
        return version
    default = VersionId.default()
    if not is_installed(default, settings):
        return version
    reported = get_binary_version(get_php_version_paths(default, settings)['php_binary'])
    if reported == (version.major, version.minor):
        logger.info(f"PHP_MANAGER: {version} is provided by the default php formula.")
        return default
    return version


# --- Linking ---

def unlink(version: VersionId) -> bool:
    code, _, stderr = run_command(['brew', 'unlink', version.formula])
    if code != 0:
        logger.warning(f"PHP_MANAGER: `brew unlink {version.formula}` failed: {stderr}")
        return False
    return True


def _link_manually(version: VersionId, settings: Settings) -> bool:
    """Symlinks every file in opt/<formula>/bin and sbin into the prefix."""
    paths = get_php_version_paths(version, settings)
    linked_any = False
    for source_dir, target_dir in ((paths['bin'], settings.bin_dir), (paths['sbin'], settings.sbin_dir)):
        if not source_dir.is_dir():
            continue
        try:
            target_dir.mkdir(parents=True, exist_ok=True)
            for source in sorted(source_dir.iterdir()):
                target = target_dir / source.name
                if target.is_symlink() or target.exists():
                    if target.is_dir() and not target.is_symlink():
                        logger.warning(f"PHP_MANAGER: Not replacing directory {target}")
                        continue
                    target.unlink()
                target.symlink_to(source)
                linked_any = True
                logger.debug(f"PHP_MANAGER: Linked {target} -> {source}")
        except OSError as e:
            logger.error(f"PHP_MANAGER: Manual linking into {target_dir} failed: {e}")
            return False
    return linked_any


def link(version: VersionId, settings: Settings) -> Tuple[bool, Optional[LinkStrategy]]:
    """Links a formula, escalating from the least destructive strategy.

    Returns (success, strategy_used).
    """
    formula = version.formula
    code, _, stderr = run_command(['brew', 'link', '--force', formula])
    if code == 0:
        logger.info(f"PHP_MANAGER: Linked {formula} with {LinkStrategy.STANDARD.value}.")
        return True, LinkStrategy.STANDARD
    logger.warning(f"PHP_MANAGER: Standard link of {formula} failed: {stderr}")

    code, _, stderr = run_command(['brew', 'link', '--overwrite', formula])
    if code == 0:
        logger.info(f"PHP_MANAGER: Linked {formula} with {LinkStrategy.OVERWRITE.value}.")
        return True, LinkStrategy.OVERWRITE
    logger.warning(f"PHP_MANAGER: Overwrite link of {formula} failed: {stderr}")

    if _link_manually(version, settings):
        logger.info(f"PHP_MANAGER: Linked {formula} with {LinkStrategy.MANUAL.value}.")
        return True, LinkStrategy.MANUAL

    logger.error(f"PHP_MANAGER: All link strategies failed for {formula}.")
    return False, None
