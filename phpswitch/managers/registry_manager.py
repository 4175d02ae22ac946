import re
import time
import logging
from pathlib import Path
from typing import List, Optional, Set

from ..core import config
from ..core.config import Settings, ensure_dir, atomic_write_text
from ..core.system_utils import CODE_TIMEOUT, run_command
from ..core.versions import VersionId, parse_version, sort_versions, version_from_formula
from ..core.errors import InvalidVersionError

logger = logging.getLogger(__name__)

_SEARCH_PATTERNS = ('/php@[0-9]/', '/^php$/')


# --- Installed Versions ---

def list_installed() -> Set[VersionId]:
    """Asks Homebrew which PHP formulae are installed.

    The unsuffixed `php` formula maps to the default VersionId. Returns an empty
    set when brew fails; nothing here is cached.
    """
    code, stdout, stderr = run_command(['brew', 'list', '--formula', '-1'])
    if code != 0:
        logger.warning(f"REGISTRY_MANAGER: `brew list` failed (code {code}): {stderr}")
        return set()

    installed = set()
    for line in stdout.splitlines():
        version = version_from_formula(line)
        if version is not None:
            installed.add(version)
    logger.debug(f"REGISTRY_MANAGER: Installed PHP formulae: {[str(v) for v in installed]}")
    return installed


def list_installed_sorted() -> List[VersionId]:
    return sort_versions(list_installed())


# --- Available Versions Cache ---

def _cache_file(settings: Settings) -> Path:
    return settings.cache_dir / config.AVAILABLE_CACHE_NAME


def _fallback_file(settings: Settings) -> Path:
    return settings.cache_dir / config.FALLBACK_CACHE_NAME


def is_cache_fresh(path: Path, ttl: int, now: Optional[float] = None) -> bool:
    """True when `path` exists, is non-empty and its mtime is within `ttl` seconds."""
    try:
        stat = path.stat()
    except FileNotFoundError:
        return False
    except OSError as e:
        logger.warning(f"REGISTRY_MANAGER: Cannot stat cache {path}: {e}")
        return False
    if stat.st_size == 0:
        return False
    now = time.time() if now is None else now
    return (now - stat.st_mtime) < ttl


def read_version_list(path: Path) -> List[VersionId]:
    """Reads newline-delimited version ids, skipping lines that do not parse."""
    versions = []
    try:
        lines = path.read_text(encoding='utf-8', errors='replace').splitlines()
    except FileNotFoundError:
        return []
    except OSError as e:
        logger.warning(f"REGISTRY_MANAGER: Cannot read {path}: {e}")
        return []
    for line in lines:
        line = line.strip()
        if not line:
            continue
        try:
            versions.append(parse_version(line))
        except InvalidVersionError:
            logger.debug(f"REGISTRY_MANAGER: Skipping bad cache line '{line}' in {path}")
    return sort_versions(versions)


def write_version_list(path: Path, versions: List[VersionId]) -> bool:
    if not ensure_dir(path.parent):
        return False
    content = "".join(f"{v}\n" for v in sort_versions(versions))
    return atomic_write_text(path, content)


def parse_search_output(stdout: str) -> List[VersionId]:
    """Extracts PHP versions from `brew search` output, which may be columns or one per line."""
    versions = []
    for token in re.split(r'\s+', stdout):
        token = token.strip()
        # tapped formulae show up as `shivammathur/php/php@8.1`
        token = token.rsplit('/', 1)[-1]
        version = version_from_formula(token)
        if version is not None:
            versions.append(version)
    return sort_versions(versions)


def search_available(settings: Settings) -> List[VersionId]:
    """Runs `brew search` bounded by settings.search_timeout for all patterns together.

    A failed pattern is skipped and a timeout ends the search. Versions found by
    the patterns that did succeed are still returned.
    """
    deadline = time.monotonic() + settings.search_timeout
    found: List[VersionId] = []
    for pattern in _SEARCH_PATTERNS:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            logger.warning("REGISTRY_MANAGER: Ran out of time searching for PHP formulae.")
            break
        code, stdout, stderr = run_command(['brew', 'search', pattern], timeout=remaining)
        if code == CODE_TIMEOUT:
            logger.warning(f"REGISTRY_MANAGER: `brew search {pattern}` timed out.")
            break
        if code != 0:
            logger.warning(f"REGISTRY_MANAGER: `brew search {pattern}` failed (code {code}): {stderr}")
            continue
        found.extend(parse_search_output(stdout))
    return sort_versions(found)


def fallback_versions(settings: Settings) -> List[VersionId]:
    """Last successful search result if kept, otherwise the built-in list."""
    kept = read_version_list(_fallback_file(settings))
    if kept:
        return kept
    return sort_versions(parse_version(v) for v in config.FALLBACK_VERSIONS)


def list_available(settings: Settings, force_refresh: bool = False) -> List[VersionId]:
    """Returns the PHP versions Homebrew can install.

    A cache younger than settings.cache_ttl is returned without running brew.
    Otherwise brew is searched; an empty result or timeout falls back to the
    fallback list. Whatever is returned is written back to the cache.
    """
    cache_file = _cache_file(settings)
    if not force_refresh and is_cache_fresh(cache_file, settings.cache_ttl):
        cached = read_version_list(cache_file)
        if cached:
            logger.debug(f"REGISTRY_MANAGER: Using cached available versions from {cache_file}")
            return cached

    logger.info("REGISTRY_MANAGER: Refreshing available PHP versions from Homebrew.")
    versions = search_available(settings)
    if versions:
        write_version_list(_fallback_file(settings), versions)
    else:
        logger.warning("REGISTRY_MANAGER: Search returned nothing, using fallback version list.")
        versions = fallback_versions(settings)

    if not write_version_list(cache_file, versions):
        logger.warning(f"REGISTRY_MANAGER: Could not update cache {cache_file}")
    return versions


def refresh_cache(settings: Settings) -> List[VersionId]:
    return list_available(settings, force_refresh=True)


def clear_cache(settings: Settings) -> bool:
    """Deletes the available-versions cache and the directory cache."""
    ok = True
    for name in (config.AVAILABLE_CACHE_NAME, config.DIRECTORY_CACHE_NAME):
        path = settings.cache_dir / name
        try:
            path.unlink(missing_ok=True)
            logger.debug(f"REGISTRY_MANAGER: Removed {path}")
        except OSError as e:
            logger.error(f"REGISTRY_MANAGER: Could not remove {path}: {e}")
            ok = False
    return ok
