import enum
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Tuple

from ..core.config import Settings
from ..core.errors import InvalidVersionError
from ..core.versions import VersionId, is_bare_major, normalize_version
from . import php_manager
from . import registry_manager
from . import install_manager
from . import fpm_manager
from . import shell_manager
from . import project_manager
from . import auto_switch_manager
from .install_manager import ConfirmFunc, decline

logger = logging.getLogger(__name__)


class SwitchState(enum.Enum):
    RESOLVE = "resolve"
    VERIFY_INSTALLED = "verify-installed"
    INSTALL = "install"
    UNLINK_OLD = "unlink-old"
    LINK_NEW = "link-new"
    UPDATE_PROFILE = "update-profile"
    RESTART_SERVICE = "restart-service"
    VERIFY_ACTIVE = "verify-active"
    DONE = "done"


@dataclass
class SwitchResult:
    success: bool = False
    state: SwitchState = SwitchState.RESOLVE
    target: Optional[VersionId] = None
    previous: Optional[VersionId] = None
    link_strategy: Optional[php_manager.LinkStrategy] = None
    profile_path: Optional[Path] = None
    installed_now: bool = False
    error: Optional[str] = None
    warnings: List[str] = field(default_factory=list)
    messages: List[str] = field(default_factory=list)

    def fail(self, message: str) -> "SwitchResult":
        logger.error(f"SWITCH_MANAGER: {self.state.value} failed: {message}")
        self.success = False
        self.error = message
        return self

    def warn(self, message: str) -> None:
        logger.warning(f"SWITCH_MANAGER: {message}")
        self.warnings.append(message)


def resolve_requested_version(requested: str, settings: Settings) -> VersionId:
    """Normalizes user input. Bare majors are checked against Homebrew's installed list."""
    installed = registry_manager.list_installed() if is_bare_major(requested) else ()
    version = normalize_version(requested, installed)
    return php_manager.resolve_default_alias(version, settings)


def switch_version(requested: str, settings: Settings,
                   install_if_missing: bool = False,
                   shell_kind: Optional[str] = None,
                   update_profile: bool = True,
                   confirm: ConfirmFunc = decline) -> SwitchResult:
    """Makes `requested` the active PHP version.

    Runs resolve, verify-installed, install (only with install_if_missing),
    unlink-old, link-new, update-profile, restart-service, verify-active.
    Install and link failures stop the run. A profile failure is recorded as
    the error but the remaining steps still run so the link is not left
    half done. Service and verification problems are warnings.
    """
    result = SwitchResult()

    # Resolve
    try:
        target = resolve_requested_version(requested, settings)
    except InvalidVersionError as e:
        return result.fail(str(e))
    result.target = target
    result.previous = php_manager.get_linked(settings)
    logger.info(f"SWITCH_MANAGER: Switching from {result.previous or 'none'} to {target}")

    # Verify-Installed / Install
    result.state = SwitchState.VERIFY_INSTALLED
    if not php_manager.is_installed(target, settings):
        if not install_if_missing:
            return result.fail(f"{target} is not installed. Run `phpswitch install {target.number}` "
                               f"or `phpswitch switch --force {target.number}`.")
        result.state = SwitchState.INSTALL
        success, message = install_manager.install_php(target, settings, confirm=confirm)
        if not success:
            return result.fail(message)
        result.installed_now = True
        result.messages.append(message)

    # Unlink-Old / Link-New
    if result.previous == target:
        logger.info(f"SWITCH_MANAGER: {target} is already linked.")
        result.messages.append(f"{target} is already the linked version.")
    else:
        result.state = SwitchState.UNLINK_OLD
        if result.previous is not None and not php_manager.unlink(result.previous):
            result.warn(f"Could not unlink {result.previous}, linking {target} anyway.")

        result.state = SwitchState.LINK_NEW
        linked, strategy = php_manager.link(target, settings)
        if not linked:
            return result.fail(f"Could not link {target}. Try `brew link --overwrite --force {target.formula}`.")
        result.link_strategy = strategy
        result.messages.append(f"Linked {target} using {strategy.value}.")

    # Update-Profile
    profile_error = None
    if update_profile:
        result.state = SwitchState.UPDATE_PROFILE
        kind = shell_kind or shell_manager.detect_shell()
        updated, detail = shell_manager.update_path(target, kind, settings)
        if updated:
            result.profile_path = Path(detail)
            result.messages.append(f"Updated {detail}. Open a new terminal or run `source {detail}`.")
        else:
            profile_error = f"Shell profile not updated: {detail}"
            logger.error(f"SWITCH_MANAGER: {profile_error}")

    # Restart-Service
    if settings.auto_restart_php_fpm:
        result.state = SwitchState.RESTART_SERVICE
        restarted, message = fpm_manager.restart_php_fpm(target)
        if restarted:
            result.messages.append(message)
        else:
            result.warn(message)

    # Verify-Active
    result.state = SwitchState.VERIFY_ACTIVE
    active = php_manager.get_linked(settings)
    if active != target:
        result.warn(f"Homebrew reports {active or 'no version'} as linked, expected {target}.")

    if profile_error:
        # the link and service steps ran, the failure belongs to the profile step
        result.state = SwitchState.UPDATE_PROFILE
        return result.fail(profile_error)
    result.state = SwitchState.DONE
    result.success = True
    return result


def switch_to_project_version(start_dir: Path, settings: Settings,
                              install_if_missing: bool = False,
                              shell_kind: Optional[str] = None,
                              confirm: ConfirmFunc = decline) -> SwitchResult:
    """Resolves the project's version and runs a full switch to it."""
    installed = registry_manager.list_installed()
    version = project_manager.resolve_project_version(start_dir, installed)
    if version is None:
        return SwitchResult(error=f"No usable PHP version file found from {start_dir} upwards.")
    return switch_version(str(version), settings, install_if_missing=install_if_missing,
                          shell_kind=shell_kind, confirm=confirm)


# --- Auto Mode ---

def _auto_target(start_dir: Path, settings: Settings) -> Optional[VersionId]:
    installed = php_manager.scan_installed(settings)
    cached = auto_switch_manager.lookup_directory(settings, start_dir)
    if cached == auto_switch_manager.NO_VERSION:
        return None

    # A cached hit only says a version file exists here, its content may have changed
    version = project_manager.resolve_project_version(start_dir, installed)
    found = str(version) if version else auto_switch_manager.NO_VERSION
    if cached != found:
        auto_switch_manager.record_directory(settings, start_dir, found)
    return version


def auto_switch(start_dir: Path, settings: Settings) -> Tuple[bool, Optional[VersionId]]:
    """Silent switch for directory-change hooks. Never installs and never asks.

    Returns (changed, version): `version` is the project's version when it is
    installed, so the caller can put it on PATH, and `changed` tells whether
    the Homebrew link was changed.
    """
    if not settings.auto_switch_php_version:
        logger.debug("SWITCH_MANAGER: Auto-switching is disabled.")
        return False, None

    target = _auto_target(Path(start_dir).resolve(), settings)
    if target is None:
        return False, None
    if not php_manager.is_installed(target, settings):
        logger.info(f"SWITCH_MANAGER: Project wants {target} but it is not installed, staying put.")
        return False, None

    current = php_manager.get_linked(settings)
    if current == target:
        return False, target

    if current is not None:
        php_manager.unlink(current)
    linked, strategy = php_manager.link(target, settings)
    if not linked:
        logger.warning(f"SWITCH_MANAGER: Auto-switch could not link {target}.")
        return False, None
    logger.info(f"SWITCH_MANAGER: Auto-switched to {target} ({strategy.value}).")
    return True, target
