import re
import logging
from typing import Dict, Optional, Tuple

from ..core.system_utils import run_command
from ..core.versions import VersionId

logger = logging.getLogger(__name__)

SERVICES_TIMEOUT = 60

_SERVICE_LINE_RE = re.compile(r'^(php(?:@\d+\.\d+)?)\s+(\S+)')


def get_service_name(version: VersionId) -> str:
    """`php` for the default formula, `php@X.Y` otherwise."""
    return version.formula


def parse_services_list(output: str) -> Dict[str, str]:
    """Maps PHP service names to their status from `brew services list` output."""
    services = {}
    for line in output.splitlines():
        match = _SERVICE_LINE_RE.match(line.strip())
        if match:
            services[match.group(1)] = match.group(2)
    return services


def list_php_services() -> Dict[str, str]:
    code, stdout, stderr = run_command(['brew', 'services', 'list'], timeout=SERVICES_TIMEOUT)
    if code != 0:
        logger.warning(f"FPM_MANAGER: `brew services list` failed: {stderr}")
        return {}
    return parse_services_list(stdout)


def get_php_fpm_status(version: VersionId, services: Optional[Dict[str, str]] = None) -> str:
    """Returns brew's status word for the service ('started', 'none', 'error', ...) or 'unknown'."""
    services = list_php_services() if services is None else services
    return services.get(get_service_name(version), "unknown")


def _services_action(action: str, service: str) -> bool:
    code, _, stderr = run_command(['brew', 'services', action, service], timeout=SERVICES_TIMEOUT)
    if code != 0:
        logger.warning(f"FPM_MANAGER: `brew services {action} {service}` failed: {stderr}")
        return False
    return True


def stop_service(version: VersionId) -> bool:
    service = get_service_name(version)
    if get_php_fpm_status(version) != "started":
        logger.debug(f"FPM_MANAGER: {service} is not running.")
        return True
    logger.info(f"FPM_MANAGER: Stopping PHP-FPM service {service}...")
    return _services_action('stop', service)


def stop_other_services(active: VersionId, services: Dict[str, str]) -> None:
    active_service = get_service_name(active)
    for service, status in services.items():
        if service != active_service and status == "started":
            logger.info(f"FPM_MANAGER: Stopping PHP-FPM service {service}...")
            _services_action('stop', service)


def restart_php_fpm(version: VersionId) -> Tuple[bool, str]:
    """Makes the target version's PHP-FPM the only one running.

    Other PHP services are stopped first. A running target is restarted, a
    stopped one started. Failure here never blocks a version switch.
    """
    service = get_service_name(version)
    services = list_php_services()
    stop_other_services(version, services)

    action = 'restart' if services.get(service) == "started" else 'start'
    logger.info(f"FPM_MANAGER: Running `brew services {action} {service}`...")
    if not _services_action(action, service):
        return False, f"Could not {action} PHP-FPM service {service}. Try `brew services {action} {service}`."

    status = get_php_fpm_status(version)
    if status != "started":
        logger.warning(f"FPM_MANAGER: {service} reports status '{status}' after {action}.")
        return False, f"PHP-FPM service {service} did not report as started (status: {status})."
    return True, f"PHP-FPM service {service} {action}ed."
