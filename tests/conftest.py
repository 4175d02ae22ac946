import re
import shutil
import logging
from pathlib import Path

import pytest

from phpswitch.core.config import Settings
from phpswitch.managers import fpm_manager, install_manager, php_manager, registry_manager

RUN_COMMAND_MODULES = (registry_manager, php_manager, install_manager, fpm_manager)


def make_installed(prefix: Path, formula: str) -> Path:
    """Lays out opt/<formula> the way Homebrew does for an installed PHP."""
    opt = prefix / 'opt' / formula
    (opt / 'bin').mkdir(parents=True, exist_ok=True)
    (opt / 'sbin').mkdir(parents=True, exist_ok=True)
    for name in ('php', 'phpize', 'php-config'):
        (opt / 'bin' / name).write_text("#!/bin/sh\n")
    (opt / 'sbin' / 'php-fpm').write_text("#!/bin/sh\n")
    return opt


class FakeBrew:
    """Stands in for run_command, answering brew and `php -v` from a fake prefix."""

    def __init__(self, prefix: Path):
        self.prefix = prefix
        self.calls = []
        self.failures = {}
        self.search_output = {
            '/php@[0-9]/': "php@8.1\nphp@8.2\nphp@8.3",
            '/^php$/': "php",
        }
        self.services = {}
        self.default_php_version = "8.4.1"

    def __call__(self, command_list, timeout=None):
        cmd = list(command_list)
        self.calls.append(cmd)
        key = tuple(cmd)
        if key in self.failures:
            outcome = self.failures[key]
            if isinstance(outcome, list):
                result = outcome.pop(0)
                if not outcome:
                    del self.failures[key]
                return result
            return outcome
        if cmd[0] == 'brew':
            return self._brew(cmd[1:])
        if cmd[-1] == '-v':
            return self._php_v(cmd[0])
        return -1, "", f"Command not found: {cmd[0]}"

    def called(self, *prefix):
        return [c for c in self.calls if tuple(c[:len(prefix)]) == prefix]

    @property
    def php_link(self) -> Path:
        return self.prefix / 'bin' / 'php'

    def installed_formulae(self):
        opt = self.prefix / 'opt'
        if not opt.is_dir():
            return []
        return sorted(p.name for p in opt.iterdir() if (p / 'bin' / 'php').exists())

    def _brew(self, args):
        if args[:1] == ['list']:
            return 0, "\n".join(self.installed_formulae() + ['git', 'openssl@3']), ""
        if args[:1] == ['search']:
            return 0, self.search_output.get(args[1], ""), ""
        if args[:1] == ['link']:
            formula = args[-1]
            self.php_link.parent.mkdir(parents=True, exist_ok=True)
            if self.php_link.is_symlink() or self.php_link.exists():
                self.php_link.unlink()
            self.php_link.symlink_to(self.prefix / 'opt' / formula / 'bin' / 'php')
            return 0, f"Linking /opt/{formula}... 25 symlinks created.", ""
        if args[:1] == ['unlink']:
            if self.php_link.is_symlink():
                self.php_link.unlink()
            return 0, "Unlinking...", ""
        if args[:1] in (['install'], ['reinstall']):
            make_installed(self.prefix, args[1])
            return 0, f"{args[1]} installed", ""
        if args[:1] == ['uninstall']:
            shutil.rmtree(self.prefix / 'opt' / args[1], ignore_errors=True)
            return 0, f"Uninstalling {args[1]}", ""
        if args[:2] == ['services', 'list']:
            lines = ["Name    Status  User File"]
            lines += [f"{name} {status}" for name, status in self.services.items()]
            return 0, "\n".join(lines), ""
        if args[:1] == ['services']:
            action, service = args[1], args[2]
            self.services[service] = "none" if action == 'stop' else "started"
            return 0, f"Successfully {action}ed `{service}`", ""
        if args == ['--prefix']:
            return 0, str(self.prefix), ""
        return 1, "", f"Unknown command: brew {' '.join(args)}"

    def _php_v(self, binary):
        path = Path(binary)
        if binary == 'php':
            if not self.php_link.exists():
                return -1, "", "Command not found: php"
            path = self.php_link.resolve()
        match = re.search(r'/opt/php@(\d+\.\d+)/', str(path))
        if match:
            return 0, f"PHP {match.group(1)}.0 (cli) (built: Jan  1 2024 00:00:00) (NTS)", ""
        if '/opt/php/' in str(path):
            return 0, f"PHP {self.default_php_version} (cli) (built: Jan  1 2024 00:00:00) (NTS)", ""
        return 1, "", "cannot execute"


@pytest.fixture
def brew_prefix(tmp_path):
    prefix = tmp_path / 'homebrew'
    for name in ('bin', 'sbin', 'opt', 'etc'):
        (prefix / name).mkdir(parents=True)
    return prefix


@pytest.fixture
def settings(tmp_path, brew_prefix):
    home = tmp_path / 'home'
    home.mkdir()
    return Settings(
        brew_prefix=brew_prefix,
        home=home,
        cache_directory=str(tmp_path / 'cache'),
        config_file=tmp_path / 'phpswitch.conf',
        auto_restart_php_fpm=False,
    )


@pytest.fixture
def fake_brew(brew_prefix, monkeypatch):
    fake = FakeBrew(brew_prefix)
    for module in RUN_COMMAND_MODULES:
        monkeypatch.setattr(module, 'run_command', fake)
    return fake


@pytest.fixture
def restore_root_logging():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    for handler in root.handlers[:]:
        if handler not in handlers:
            root.removeHandler(handler)
            handler.close()
    for handler in handlers:
        if handler not in root.handlers:
            root.addHandler(handler)
    root.setLevel(level)
