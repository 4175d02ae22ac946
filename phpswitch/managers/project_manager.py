import re
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional

from ..core import config
from ..core.config import atomic_write_text
from ..core.errors import InvalidVersionError
from ..core.versions import VersionId, normalize_version, validate_version_string

logger = logging.getLogger(__name__)

# Marker files larger than this are not version files
_MAX_MARKER_BYTES = 4096

_COMPOSER_PLATFORM_RE = re.compile(r'"platform"\s*:\s*\{[^{}]*?"php"\s*:\s*"([^"]*)"', re.S)
_COMPOSER_REQUIRE_RE = re.compile(r'"require"\s*:\s*\{[^{}]*?"php"\s*:\s*"([^"]*)"', re.S)
_CONSTRAINT_VERSION_RE = re.compile(r'(\d+)(?:\.(\d+))?')
_TOOL_VERSIONS_RE = re.compile(r'^\s*php\s+(\S+)', re.M)


@dataclass(frozen=True)
class ProjectVersionSource:
    """Where a project version string came from, before normalization."""
    path: Path
    raw: str
    kind: str  # 'marker', 'composer' or 'tool-versions'


def _read_small_text(path: Path) -> Optional[str]:
    try:
        with open(path, 'r', encoding='utf-8', errors='replace') as f:
            return f.read(_MAX_MARKER_BYTES)
    except OSError as e:
        logger.warning(f"PROJECT_MANAGER: Could not read {path}: {e}")
        return None


def version_from_composer(content: str) -> Optional[str]:
    """Pulls a major[.minor] out of config.platform.php or require.php.

    This is a text match on the two fields only, not a JSON parse, so that a
    composer.json with unrelated syntax errors still yields a version.
    """
    for pattern in (_COMPOSER_PLATFORM_RE, _COMPOSER_REQUIRE_RE):
        match = pattern.search(content)
        if not match:
            continue
        constraint = _CONSTRAINT_VERSION_RE.search(match.group(1))
        if constraint:
            major, minor = constraint.group(1), constraint.group(2)
            return f"{major}.{minor}" if minor is not None else major
    return None


def version_from_tool_versions(content: str) -> Optional[str]:
    match = _TOOL_VERSIONS_RE.search(content)
    return match.group(1) if match else None


def _source_in_directory(directory: Path) -> Optional[ProjectVersionSource]:
    """Checks one directory: marker files, then composer.json, then .tool-versions."""
    for name in config.PROJECT_MARKER_FILES:
        marker = directory / name
        if marker.is_file():
            content = _read_small_text(marker)
            if content is not None:
                # whole content, so embedded newlines fail validation later
                return ProjectVersionSource(marker, content.strip(), 'marker')

    composer = directory / config.COMPOSER_FILE
    if composer.is_file():
        content = _read_small_text(composer)
        raw = version_from_composer(content) if content else None
        if raw:
            return ProjectVersionSource(composer, raw, 'composer')

    tool_versions = directory / config.TOOL_VERSIONS_FILE
    if tool_versions.is_file():
        content = _read_small_text(tool_versions)
        raw = version_from_tool_versions(content) if content else None
        if raw:
            return ProjectVersionSource(tool_versions, raw, 'tool-versions')
    return None


def find_project_version_source(start_dir: Path) -> Optional[ProjectVersionSource]:
    """Walks from start_dir up to the filesystem root, stopping at the first directory with a source."""
    current_check_path = Path(start_dir).resolve()
    while True:
        source = _source_in_directory(current_check_path)
        if source is not None:
            logger.debug(f"PROJECT_MANAGER: Found {source.kind} version '{source.raw!r}' in {source.path}")
            return source
        if current_check_path.parent == current_check_path:
            logger.debug(f"PROJECT_MANAGER: Reached root, no project version for '{start_dir}'.")
            return None
        current_check_path = current_check_path.parent


def resolve_project_version(start_dir: Path, installed: Iterable[VersionId] = ()) -> Optional[VersionId]:
    """Returns the project's VersionId, or None when there is none or it is unusable.

    Strings that fail validation (too long, control characters, not a version)
    are logged and dropped here so they never reach brew or a profile.
    """
    source = find_project_version_source(start_dir)
    if source is None:
        return None
    try:
        version = normalize_version(source.raw, installed)
    except InvalidVersionError as e:
        logger.warning(f"PROJECT_MANAGER: Ignoring version in {source.path}: {e}")
        return None
    logger.info(f"PROJECT_MANAGER: Project version {version} from {source.path}")
    return version


def format_marker_content(version: VersionId) -> str:
    """'8.1' or 'default', without the php@ prefix."""
    return f"{version.number}\n"


def set_project_version(directory: Path, version: VersionId) -> Optional[Path]:
    """Writes .php-version into `directory`. Returns the file written, None on failure."""
    content = format_marker_content(version)
    validate_version_string(content)
    marker = Path(directory) / config.PROJECT_WRITE_FILE
    if not atomic_write_text(marker, content):
        return None
    logger.info(f"PROJECT_MANAGER: Wrote {version} to {marker}")
    return marker
