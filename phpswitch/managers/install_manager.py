import re
import enum
import shutil
import logging
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple

from ..core.config import Settings
from ..core.system_utils import run_command
from ..core.versions import VersionId
from . import php_manager
from . import fpm_manager

logger = logging.getLogger(__name__)

# Installs can take a long time on source builds
INSTALL_TIMEOUT = 1800

ConfirmFunc = Callable[[str], bool]


class ErrorKind(enum.Enum):
    PERMISSION = "permission"
    RESOURCE_BUSY = "resource-busy"
    ALREADY_INSTALLED = "already-installed"
    FORMULA_NOT_FOUND = "formula-not-found"
    CONFLICT = "conflict"
    RUBY_VERSION = "ruby-version"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class ErrorRule:
    pattern: re.Pattern
    kind: ErrorKind
    remedy: str


@dataclass
class InstallFailure:
    kind: ErrorKind
    remedy: str
    detail: str = ""
    conflicting_package: Optional[str] = None


# Evaluated top to bottom, first match wins
INSTALL_ERROR_RULES: List[ErrorRule] = [
    ErrorRule(re.compile(r'Permission denied', re.I), ErrorKind.PERMISSION,
              "Fix Homebrew permissions: sudo chown -R $(whoami) $(brew --prefix)/*"),
    ErrorRule(re.compile(r'Resource busy', re.I), ErrorKind.RESOURCE_BUSY,
              "Another process holds Homebrew files. Close running PHP processes and retry."),
    ErrorRule(re.compile(r'already installed', re.I), ErrorKind.ALREADY_INSTALLED,
              "The formula is already installed. Reinstall it with `brew reinstall <formula>`."),
    ErrorRule(re.compile(r'No available formula', re.I), ErrorKind.FORMULA_NOT_FOUND,
              "Homebrew has no such formula. Try `brew tap shivammathur/php` for older versions."),
    ErrorRule(re.compile(r'cannot install\b.*?\bbecause (?:it conflicts with|conflicting formulae are installed)', re.I), ErrorKind.CONFLICT,
              "Uninstall or unlink the conflicting package, then retry."),
    ErrorRule(re.compile(r'Homebrew must be run under Ruby 2\.6', re.I), ErrorKind.RUBY_VERSION,
              "Homebrew needs updating: run `brew update-reset` and retry."),
]

_CONFLICT_RE = re.compile(r'conflicts with [`\'"]?([\w@.+-]+)')
_CONFLICT_LINE_RE = re.compile(r'^\s*([\w@.+-]+): because', re.M)


def classify_install_error(output: str) -> InstallFailure:
    """Maps brew's error text to an InstallFailure using INSTALL_ERROR_RULES."""
    for rule in INSTALL_ERROR_RULES:
        if rule.pattern.search(output):
            failure = InstallFailure(kind=rule.kind, remedy=rule.remedy, detail=output.strip())
            if rule.kind is ErrorKind.CONFLICT:
                match = _CONFLICT_RE.search(output) or _CONFLICT_LINE_RE.search(output)
                if match:
                    failure.conflicting_package = match.group(1).rstrip('.')
                    failure.remedy = f"Run `brew uninstall {failure.conflicting_package}` and retry."
            return failure
    return InstallFailure(kind=ErrorKind.UNKNOWN,
                          remedy="Installation failed for an unrecognised reason. Run with --debug and check the log.",
                          detail=output.strip())


def decline(_question: str) -> bool:
    """Default confirm callback: answers no."""
    return False


def install_php(version: VersionId, settings: Settings,
                confirm: ConfirmFunc = decline) -> Tuple[bool, str]:
    """Installs a PHP formula.

    Known failures that have a destructive fix (conflicting package, already
    installed) ask `confirm` before retrying once.

    Returns:
        (success, message). On failure the message carries the remedy.
    """
    formula = version.formula
    logger.info(f"INSTALL_MANAGER: Installing {formula}...")
    code, stdout, stderr = run_command(['brew', 'install', formula], timeout=INSTALL_TIMEOUT)
    if code == 0:
        if php_manager.is_installed(version, settings):
            return True, f"{formula} installed."
        return False, f"brew reported success but {formula}'s php binary is missing."

    failure = classify_install_error(f"{stderr}\n{stdout}")
    logger.error(f"INSTALL_MANAGER: Installing {formula} failed ({failure.kind.value}): {failure.detail}")

    if failure.kind is ErrorKind.ALREADY_INSTALLED:
        if confirm(f"{formula} is already installed but not usable. Reinstall it?"):
            return reinstall_php(version, settings)
    elif failure.kind is ErrorKind.CONFLICT and failure.conflicting_package:
        package = failure.conflicting_package
        if confirm(f"{formula} conflicts with {package}. Uninstall {package} and retry?"):
            code, _, err = run_command(['brew', 'uninstall', package], timeout=INSTALL_TIMEOUT)
            if code != 0:
                return False, f"Could not uninstall {package}: {err}"
            code, stdout, stderr = run_command(['brew', 'install', formula], timeout=INSTALL_TIMEOUT)
            if code == 0 and php_manager.is_installed(version, settings):
                return True, f"{formula} installed after removing {package}."
            failure = classify_install_error(f"{stderr}\n{stdout}")

    return False, f"Failed to install {formula} ({failure.kind.value}). {failure.remedy}"


def reinstall_php(version: VersionId, settings: Settings) -> Tuple[bool, str]:
    formula = version.formula
    code, stdout, stderr = run_command(['brew', 'reinstall', formula], timeout=INSTALL_TIMEOUT)
    if code == 0 and php_manager.is_installed(version, settings):
        return True, f"{formula} reinstalled."
    failure = classify_install_error(f"{stderr}\n{stdout}")
    return False, f"Failed to reinstall {formula} ({failure.kind.value}). {failure.remedy}"


def uninstall_php(version: VersionId, settings: Settings,
                  force: bool = False, purge: bool = False) -> Tuple[bool, str]:
    """Removes a PHP formula.

    The linked version is refused unless `force` is set. `purge` also deletes
    the version's configuration directory under etc/php.
    """
    formula = version.formula
    if not php_manager.is_installed(version, settings):
        return False, f"{version} is not installed."

    active = php_manager.get_linked(settings)
    if active == version:
        if not force:
            return False, f"{version} is the active version. Switch first or pass --force."
        logger.info(f"INSTALL_MANAGER: Unlinking active {formula} before uninstall.")
        php_manager.unlink(version)

    fpm_manager.stop_service(version)

    code, stdout, stderr = run_command(['brew', 'uninstall', formula], timeout=INSTALL_TIMEOUT)
    if code != 0:
        failure = classify_install_error(f"{stderr}\n{stdout}")
        return False, f"Failed to uninstall {formula}: {stderr or stdout}. {failure.remedy}"

    if purge and not version.is_default:
        etc_dir = settings.brew_prefix / 'etc' / 'php' / version.number
        if etc_dir.is_dir():
            try:
                shutil.rmtree(etc_dir)
                logger.info(f"INSTALL_MANAGER: Removed configuration {etc_dir}")
            except OSError as e:
                logger.warning(f"INSTALL_MANAGER: Could not remove {etc_dir}: {e}")
                return True, f"{formula} uninstalled, but {etc_dir} could not be removed."

    return True, f"{formula} uninstalled."
