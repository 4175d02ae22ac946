import os
import sys
import json
import argparse
import logging
from pathlib import Path
from typing import Callable, Dict, List, Optional

from . import __version__
from .core import config
from .core.config import Settings
from .core.errors import ConfigError, InvalidVersionError
from .core.system_utils import find_executables
from .core.versions import VersionId, normalize_version, sort_versions
from .managers import (
    auto_switch_manager,
    install_manager,
    php_manager,
    project_manager,
    registry_manager,
    shell_manager,
    switch_manager,
    system_check_manager,
)

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1


# --- Helpers ---

def _make_confirm(args: argparse.Namespace) -> install_manager.ConfirmFunc:
    """Yes/no prompt for destructive retries. Non-interactive runs decline unless --yes."""
    if getattr(args, 'yes', False):
        return lambda _question: True
    if not sys.stdin.isatty():
        return install_manager.decline

    def _ask(question: str) -> bool:
        try:
            answer = input(f"{question} [y/N] ")
        except EOFError:
            return False
        return answer.strip().lower() in ('y', 'yes')
    return _ask


def _parse_user_version(raw: str, installed=()) -> Optional[VersionId]:
    try:
        return normalize_version(raw, installed)
    except InvalidVersionError as e:
        print(f"Error: {e}", file=sys.stderr)
        return None


def _print_switch_result(result: switch_manager.SwitchResult) -> int:
    for message in result.messages:
        print(message)
    for warning in result.warnings:
        print(f"Warning: {warning}", file=sys.stderr)
    if not result.success:
        print(f"Error: {result.error}", file=sys.stderr)
        return EXIT_FAILURE
    print(f"Switched to {result.target}.")
    return EXIT_OK


# --- Commands ---

def cmd_status(args: argparse.Namespace, settings: Settings) -> int:
    """Bare `phpswitch`: show what is linked and installed."""
    current = php_manager.get_linked(settings)
    print(f"Current PHP version: {current or 'none'}")
    installed = registry_manager.list_installed_sorted()
    if installed:
        print("Installed versions:")
        for version in installed:
            marker = " (active)" if version == current else ""
            print(f"  {version}{marker}")
    else:
        print("No Homebrew PHP versions installed.")
    if settings.default_php_version:
        try:
            default = normalize_version(settings.default_php_version, installed)
        except InvalidVersionError as e:
            logger.warning(f"CLI: DEFAULT_PHP_VERSION is invalid: {e}")
        else:
            if default != current:
                print(f"Configured default is {default}. Run `phpswitch switch {default.number}` to use it.")
    return EXIT_OK


def cmd_switch(args: argparse.Namespace, settings: Settings) -> int:
    result = switch_manager.switch_version(
        args.version, settings,
        install_if_missing=args.force,
        shell_kind=args.shell,
        update_profile=not args.no_profile,
        confirm=_make_confirm(args),
    )
    return _print_switch_result(result)


def cmd_install(args: argparse.Namespace, settings: Settings) -> int:
    version = _parse_user_version(args.version)
    if version is None:
        return EXIT_FAILURE
    if php_manager.is_installed(version, settings):
        print(f"{version} is already installed.")
        return EXIT_OK
    success, message = install_manager.install_php(version, settings, confirm=_make_confirm(args))
    print(message, file=sys.stdout if success else sys.stderr)
    return EXIT_OK if success else EXIT_FAILURE


def cmd_uninstall(args: argparse.Namespace, settings: Settings) -> int:
    version = _parse_user_version(args.version)
    if version is None:
        return EXIT_FAILURE
    success, message = install_manager.uninstall_php(version, settings, force=args.force, purge=args.purge)
    print(message, file=sys.stdout if success else sys.stderr)
    return EXIT_OK if success else EXIT_FAILURE


def build_listing(settings: Settings, refresh: bool = False) -> Dict[str, object]:
    current = php_manager.get_linked(settings)
    installed = registry_manager.list_installed_sorted()
    available = registry_manager.list_available(settings, force_refresh=refresh)
    return {
        "current": str(current) if current else None,
        "installed": [str(v) for v in installed],
        "available": [str(v) for v in sort_versions(available) if v not in installed],
    }


def cmd_list(args: argparse.Namespace, settings: Settings) -> int:
    listing = build_listing(settings, refresh=args.refresh)
    if args.json:
        print(json.dumps(listing, indent=2))
        return EXIT_OK

    print("Installed PHP versions:")
    for name in listing["installed"] or ["(none)"]:
        marker = " (active)" if name == listing["current"] else ""
        print(f"  {name}{marker}")
    print("Available to install:")
    for name in listing["available"] or ["(none)"]:
        print(f"  {name}")
    return EXIT_OK


def cmd_current(args: argparse.Namespace, settings: Settings) -> int:
    current = php_manager.get_linked(settings)
    print(current if current is not None else "none")
    return EXIT_OK


def cmd_project(args: argparse.Namespace, settings: Settings) -> int:
    result = switch_manager.switch_to_project_version(
        Path(args.dir), settings,
        install_if_missing=args.force,
        shell_kind=args.shell,
        confirm=_make_confirm(args),
    )
    if result.target is None and result.error:
        print(f"Error: {result.error}", file=sys.stderr)
        return EXIT_FAILURE
    return _print_switch_result(result)


def cmd_get_project_version(args: argparse.Namespace, settings: Settings) -> int:
    version = project_manager.resolve_project_version(Path(args.dir), php_manager.scan_installed(settings))
    if version is None:
        return EXIT_FAILURE
    print(version)
    return EXIT_OK


def cmd_set_project(args: argparse.Namespace, settings: Settings) -> int:
    version = _parse_user_version(args.version, php_manager.scan_installed(settings))
    if version is None:
        return EXIT_FAILURE
    marker = project_manager.set_project_version(Path(args.dir), version)
    if marker is None:
        print(f"Error: could not write {config.PROJECT_WRITE_FILE} in {args.dir}", file=sys.stderr)
        return EXIT_FAILURE
    auto_switch_manager.forget_directory(settings, marker.parent.resolve())
    print(f"Set project PHP version to {version} in {marker}")
    if not php_manager.is_installed(version, settings):
        print(f"Note: {version} is not installed yet. Run `phpswitch install {version.number}`.")
    return EXIT_OK


def cmd_clear_cache(args: argparse.Namespace, settings: Settings) -> int:
    if not registry_manager.clear_cache(settings):
        return EXIT_FAILURE
    print("Cache cleared.")
    return EXIT_OK


def cmd_refresh_cache(args: argparse.Namespace, settings: Settings) -> int:
    versions = registry_manager.refresh_cache(settings)
    print(f"Cache refreshed: {len(versions)} PHP versions available.")
    return EXIT_OK


def cmd_auto(args: argparse.Namespace, settings: Settings) -> int:
    """Hook entry point. Prints nothing unless --emit-shell and a version applies."""
    _, version = switch_manager.auto_switch(Path.cwd(), settings)
    if args.emit_shell and version is not None:
        kind = args.shell or shell_manager.detect_shell()
        sys.stdout.write(shell_manager.render_path_export(version, kind, settings))
    return EXIT_OK


def cmd_install_auto_switch(args: argparse.Namespace, settings: Settings) -> int:
    kind = args.shell or shell_manager.detect_shell()
    success, detail = auto_switch_manager.install_hook(kind, settings)
    if not success:
        print(f"Error: {detail}", file=sys.stderr)
        return EXIT_FAILURE
    if not settings.auto_switch_php_version:
        updated = config.set_config_value(settings, 'AUTO_SWITCH_PHP_VERSION', 'true')
        if not config.save_settings(updated):
            print(f"Error: could not enable auto-switching in {settings.config_file}", file=sys.stderr)
            return EXIT_FAILURE
    print(f"Auto-switching installed in {detail}. Open a new terminal to activate it.")
    return EXIT_OK


def cmd_clear_directory_cache(args: argparse.Namespace, settings: Settings) -> int:
    if not auto_switch_manager.clear_directory_cache(settings):
        return EXIT_FAILURE
    print("Directory cache cleared.")
    return EXIT_OK


def cmd_config(args: argparse.Namespace, settings: Settings) -> int:
    if args.config_action == 'set':
        try:
            updated = config.set_config_value(settings, args.key, args.value)
        except ConfigError as e:
            print(f"Error: {e}", file=sys.stderr)
            return EXIT_FAILURE
        if not config.save_settings(updated):
            print(f"Error: could not write {settings.config_file}", file=sys.stderr)
            return EXIT_FAILURE
        print(f"{args.key.upper()} updated in {settings.config_file}")
        return EXIT_OK

    print(f"# {settings.config_file}")
    for key, value in config.settings_as_dict(settings).items():
        if isinstance(value, bool):
            value = 'true' if value else 'false'
        print(f"{key}={value}")
    return EXIT_OK


def collect_diagnostics(settings: Settings, path_value: Optional[str] = None,
                        shell_kind: Optional[str] = None) -> List[str]:
    """Problems that keep the linked PHP from being the one a shell runs."""
    problems = []
    linked = php_manager.get_linked(settings)
    if linked is None:
        problems.append("No Homebrew PHP version is linked.")

    path_value = os.environ.get('PATH', '') if path_value is None else path_value
    binaries = find_executables('php', path_value)
    if binaries and linked is not None:
        expected_dirs = {str(php_manager.get_php_version_paths(linked, settings)['bin']), str(settings.bin_dir)}
        if str(Path(binaries[0]).parent) not in expected_dirs:
            problems.append(f"First php on PATH is {binaries[0]}, not the linked {linked}.")

    kind = shell_kind or shell_manager.detect_shell()
    rc_file = shell_manager.get_rc_file(kind, settings.home)
    if rc_file.exists():
        content = rc_file.read_text(encoding='utf-8', errors='replace')
        if shell_manager.has_legacy_path_lines(content):
            problems.append(f"{rc_file} has PHP PATH lines outside the phpswitch block.")
        if config.MANAGED_BLOCK_BEGIN not in content:
            problems.append(f"{rc_file} has no phpswitch block yet. Run `phpswitch switch <version>`.")
    return problems


def cmd_doctor(args: argparse.Namespace, settings: Settings) -> int:
    linked = php_manager.get_linked(settings)
    print(f"Homebrew prefix: {settings.brew_prefix}")
    print(f"Linked PHP: {linked or 'none'}")
    binaries = find_executables('php', os.environ.get('PATH', ''))
    print("php binaries on PATH:")
    for binary in binaries or ["(none)"]:
        print(f"  {binary}")
    kind = args.shell or shell_manager.detect_shell()
    hook = "yes" if auto_switch_manager.is_hook_installed(kind, settings) else "no"
    print(f"Shell: {kind} ({shell_manager.get_rc_file(kind, settings.home)}), auto-switch hook: {hook}")

    problems = collect_diagnostics(settings, shell_kind=kind)
    if not problems:
        print("No problems found.")
        return EXIT_OK
    print("Problems:")
    for problem in problems:
        print(f"  - {problem}")
    return EXIT_FAILURE


def cmd_check_dependencies(args: argparse.Namespace, settings: Settings) -> int:
    problems = system_check_manager.check_dependencies(settings)
    if not problems:
        print("All dependencies are satisfied.")
        return EXIT_OK
    for problem in problems:
        print(f"  - {problem}", file=sys.stderr)
    return EXIT_FAILURE


def cmd_fix_permissions(args: argparse.Namespace, settings: Settings) -> int:
    success, messages = system_check_manager.fix_permissions(settings)
    for message in messages:
        print(message, file=sys.stdout if success else sys.stderr)
    return EXIT_OK if success else EXIT_FAILURE


# --- Parser ---

def _add_shell_option(parser: argparse.ArgumentParser) -> None:
    parser.add_argument('--shell', choices=shell_manager.SUPPORTED_SHELLS,
                        help='Shell whose profile to use (default: detected from $SHELL).')


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='phpswitch', description="Switch between Homebrew PHP versions.")
    parser.add_argument('--debug', action='store_true', help='Show debug logging.')
    parser.add_argument('--config', metavar='FILE', type=Path, help=f'Config file (default: {config.CONFIG_FILE}).')
    parser.add_argument('-y', '--yes', action='store_true', help='Answer yes to confirmation prompts.')
    parser.add_argument('-v', '--version', action='version', version=f'phpswitch {__version__}')
    sub = parser.add_subparsers(dest='command', metavar='COMMAND')

    p = sub.add_parser('switch', help='Switch to a PHP version (8.1, php@8.1, 8, default).')
    p.add_argument('version')
    p.add_argument('-f', '--force', '--install', dest='force', action='store_true', help='Install the version if missing.')
    p.add_argument('--no-profile', action='store_true', help='Do not touch the shell profile.')
    _add_shell_option(p)
    p.set_defaults(func=cmd_switch)

    p = sub.add_parser('install', help='Install a PHP version.')
    p.add_argument('version')
    p.set_defaults(func=cmd_install)

    p = sub.add_parser('uninstall', help='Uninstall a PHP version.')
    p.add_argument('version')
    p.add_argument('-f', '--force', action='store_true', help='Allow removing the active version.')
    p.add_argument('--purge', action='store_true', help='Also delete etc/php/<version>.')
    p.set_defaults(func=cmd_uninstall)

    p = sub.add_parser('list', help='List installed and available versions.')
    p.add_argument('--json', action='store_true', help='Print JSON.')
    p.add_argument('--refresh', action='store_true', help='Ignore the available-versions cache.')
    p.set_defaults(func=cmd_list)

    p = sub.add_parser('current', help='Print the linked PHP version.')
    p.set_defaults(func=cmd_current)

    p = sub.add_parser('project', help="Switch to the version named by the project's version file.")
    p.add_argument('--dir', default='.', help='Directory to start searching from.')
    p.add_argument('-f', '--force', action='store_true', help='Install the version if missing.')
    _add_shell_option(p)
    p.set_defaults(func=cmd_project)

    p = sub.add_parser('get-project-version', help="Print the project's PHP version.")
    p.add_argument('dir', nargs='?', default='.')
    p.set_defaults(func=cmd_get_project_version)

    p = sub.add_parser('set-project', help='Write .php-version in a directory.')
    p.add_argument('version')
    p.add_argument('--dir', default='.', help='Directory to write into.')
    p.set_defaults(func=cmd_set_project)

    p = sub.add_parser('clear-cache', help='Delete cached version lists.')
    p.set_defaults(func=cmd_clear_cache)

    p = sub.add_parser('refresh-cache', help='Re-query Homebrew for available versions.')
    p.set_defaults(func=cmd_refresh_cache)

    p = sub.add_parser('auto', help='Silently switch to the project version (used by shell hooks).')
    p.add_argument('--emit-shell', action='store_true', help='Print PATH export code for the project version.')
    _add_shell_option(p)
    p.set_defaults(func=cmd_auto)

    p = sub.add_parser('install-auto-switch', help='Add the directory-change hook to the shell profile.')
    _add_shell_option(p)
    p.set_defaults(func=cmd_install_auto_switch)

    p = sub.add_parser('clear-directory-cache', help='Forget cached project versions per directory.')
    p.set_defaults(func=cmd_clear_directory_cache)

    p = sub.add_parser('config', help='Show or change configuration.')
    config_sub = p.add_subparsers(dest='config_action', metavar='ACTION')
    config_sub.add_parser('show', help='Print all settings.')
    set_parser = config_sub.add_parser('set', help='Set one key.')
    set_parser.add_argument('key', choices=sorted(config.CONFIG_KEYS), type=str.upper)
    set_parser.add_argument('value')
    p.set_defaults(func=cmd_config)

    p = sub.add_parser('doctor', help='Look for PATH and profile problems.')
    _add_shell_option(p)
    p.set_defaults(func=cmd_doctor)

    p = sub.add_parser('check-dependencies', help='Check that Homebrew and the phpswitch directories are usable.')
    p.set_defaults(func=cmd_check_dependencies)

    p = sub.add_parser('fix-permissions', help='Make the cache directory and config file writable again.')
    p.set_defaults(func=cmd_fix_permissions)

    return parser


def dispatch(args: argparse.Namespace, settings: Settings) -> int:
    handler: Callable[[argparse.Namespace, Settings], int] = getattr(args, 'func', cmd_status)
    try:
        return handler(args, settings)
    except (InvalidVersionError, ConfigError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_FAILURE
    except KeyboardInterrupt:
        print("Interrupted.", file=sys.stderr)
        return 130
    except Exception as e:
        logger.error(f"CLI: Unexpected error in '{args.command}': {e}", exc_info=True)
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_FAILURE
