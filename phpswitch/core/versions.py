import re
import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional, Tuple

from .errors import InvalidVersionError

logger = logging.getLogger(__name__)

FORMULA_PREFIX = "php@"
DEFAULT_NAME = "default"
DEFAULT_FORMULA = "php"

# Anything longer than this never reaches brew or a shell profile
MAX_VERSION_LENGTH = 32

_VERSION_RE = re.compile(r'^(?:php|(?:php@)?(?:(\d{1,2})(?:\.(\d{1,2}))?(?:\.\d{1,3})?|default))$')
_CONTROL_CHARS_RE = re.compile(r'[\x00-\x1f\x7f]')


@dataclass(frozen=True)
class VersionId:
    """Canonical PHP version: a major.minor pair or the unsuffixed `php` formula.

    The default formula is represented with major and minor set to None and is
    never ordered against numbered versions.
    """
    major: Optional[int] = None
    minor: Optional[int] = None

    @classmethod
    def default(cls) -> "VersionId":
        return cls()

    @property
    def is_default(self) -> bool:
        return self.major is None

    @property
    def number(self) -> str:
        """'8.1' for numbered versions, 'default' for the unsuffixed formula."""
        if self.is_default:
            return DEFAULT_NAME
        return f"{self.major}.{self.minor}"

    @property
    def formula(self) -> str:
        """Homebrew formula name, which is also the `brew services` name."""
        if self.is_default:
            return DEFAULT_FORMULA
        return f"{FORMULA_PREFIX}{self.number}"

    def sort_key(self) -> Tuple[int, int, int]:
        # default sorts after every numbered version
        if self.is_default:
            return (1, 0, 0)
        return (0, self.major, self.minor)

    def __str__(self) -> str:
        return f"{FORMULA_PREFIX}{self.number}"


def validate_version_string(raw: str) -> str:
    """Checks a user or file supplied version string before it is used anywhere.

    Returns the stripped string. Raises InvalidVersionError when it is empty,
    longer than MAX_VERSION_LENGTH, holds control characters or does not look
    like a version at all.
    """
    if raw is None:
        raise InvalidVersionError("No version given.")
    text = raw.strip()
    if not text:
        raise InvalidVersionError("Empty version string.")
    if len(text) > MAX_VERSION_LENGTH:
        raise InvalidVersionError(f"Version string longer than {MAX_VERSION_LENGTH} characters.")
    if _CONTROL_CHARS_RE.search(text):
        raise InvalidVersionError("Version string contains control characters.")
    if not _VERSION_RE.match(text):
        raise InvalidVersionError(f"Invalid version format: '{text}'.")
    return text


def is_bare_major(raw: str) -> bool:
    text = raw.strip()
    if text.startswith(FORMULA_PREFIX):
        text = text[len(FORMULA_PREFIX):]
    return text.isdigit()


def parse_version(raw: str) -> VersionId:
    """Parses 'php@8.1', '8.1', '8.1.27', 'php@default', 'default' or 'php'.

    A bare major ('8') is rejected here, use normalize_version() when the
    installed versions are known.
    """
    text = validate_version_string(raw)
    match = _VERSION_RE.match(text)
    major, minor = match.group(1), match.group(2)
    if major is None:
        return VersionId.default()
    if minor is None:
        raise InvalidVersionError(f"'{text}' needs a minor version (for example {major}.0).")
    return VersionId(int(major), int(minor))


def normalize_version(raw: str, installed: Iterable[VersionId] = ()) -> VersionId:
    """Turns any accepted version string into a VersionId.

    A bare major maps to the highest installed minor of that major, compared
    numerically, or to `<major>.0` when none is installed.
    """
    text = validate_version_string(raw)
    if not is_bare_major(text):
        return parse_version(text)

    major = int(text[len(FORMULA_PREFIX):] if text.startswith(FORMULA_PREFIX) else text)
    candidates = [v for v in installed if not v.is_default and v.major == major]
    if candidates:
        best = max(candidates, key=lambda v: v.minor)
        logger.debug(f"VERSIONS: Bare major '{text}' resolved to installed {best}.")
        return best
    logger.debug(f"VERSIONS: No installed PHP {major}.x, using {major}.0.")
    return VersionId(major, 0)


def version_from_formula(name: str) -> Optional[VersionId]:
    """Maps a Homebrew formula name to a VersionId, None for anything else."""
    name = name.strip()
    if name == DEFAULT_FORMULA:
        return VersionId.default()
    match = re.match(r'^php@(\d+)\.(\d+)$', name)
    if match:
        return VersionId(int(match.group(1)), int(match.group(2)))
    return None


def sort_versions(versions: Iterable[VersionId], reverse: bool = False) -> List[VersionId]:
    return sorted(set(versions), key=lambda v: v.sort_key(), reverse=reverse)
