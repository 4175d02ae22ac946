"""End-to-end switch flows against a fake Homebrew prefix."""

from dataclasses import replace

from phpswitch.core import config
from phpswitch.core.versions import VersionId
from phpswitch.managers import auto_switch_manager, php_manager, project_manager, switch_manager
from phpswitch.managers.php_manager import LinkStrategy
from phpswitch.managers.shell_manager import SHELL_ZSH
from phpswitch.managers.switch_manager import SwitchState

from conftest import make_installed


class TestSwitchVersion:
    def test_switch_updates_link_and_profile(self, settings, fake_brew):
        make_installed(settings.brew_prefix, 'php@8.1')
        result = switch_manager.switch_version('php@8.1', settings, shell_kind=SHELL_ZSH)

        assert result.success, result.error
        assert result.state is SwitchState.DONE
        assert result.target == VersionId(8, 1)
        assert result.link_strategy is LinkStrategy.STANDARD
        assert php_manager.get_linked(settings) == VersionId(8, 1)

        profile = (settings.home / '.zshrc').read_text()
        assert result.profile_path == settings.home / '.zshrc'
        assert config.MANAGED_BLOCK_BEGIN in profile
        assert str(settings.opt_dir / 'php@8.1' / 'bin') in profile
        assert str(settings.opt_dir / 'php@8.1' / 'sbin') in profile

    def test_previous_version_unlinked(self, settings, fake_brew):
        make_installed(settings.brew_prefix, 'php@8.1')
        make_installed(settings.brew_prefix, 'php@8.3')
        switch_manager.switch_version('8.1', settings, shell_kind=SHELL_ZSH)

        result = switch_manager.switch_version('8.3', settings, shell_kind=SHELL_ZSH)
        assert result.success
        assert result.previous == VersionId(8, 1)
        assert fake_brew.called('brew', 'unlink', 'php@8.1')
        assert php_manager.get_linked(settings) == VersionId(8, 3)

    def test_bare_major_picks_installed_minor(self, settings, fake_brew):
        make_installed(settings.brew_prefix, 'php@8.1')
        make_installed(settings.brew_prefix, 'php@8.3')
        result = switch_manager.switch_version('8', settings, shell_kind=SHELL_ZSH, update_profile=False)
        assert result.target == VersionId(8, 3)

    def test_not_installed_fails_before_linking(self, settings, fake_brew):
        result = switch_manager.switch_version('7.4', settings, shell_kind=SHELL_ZSH)
        assert not result.success
        assert result.state is SwitchState.VERIFY_INSTALLED
        assert 'not installed' in result.error
        assert fake_brew.called('brew', 'link') == []
        assert not (settings.home / '.zshrc').exists()

    def test_install_if_missing(self, settings, fake_brew):
        result = switch_manager.switch_version('8.2', settings, install_if_missing=True, shell_kind=SHELL_ZSH)
        assert result.success, result.error
        assert result.installed_now
        assert fake_brew.called('brew', 'install', 'php@8.2')

    def test_invalid_version_rejected(self, settings, fake_brew):
        result = switch_manager.switch_version('8.1; rm -rf ~', settings, shell_kind=SHELL_ZSH)
        assert not result.success
        assert fake_brew.calls == []

    def test_link_failure_stops(self, settings, fake_brew):
        fake_brew.failures[('brew', 'link', '--force', 'php@8.1')] = (1, "", "nope")
        fake_brew.failures[('brew', 'link', '--overwrite', 'php@8.1')] = (1, "", "nope")
        make_installed(settings.brew_prefix, 'php@8.1')
        # a file where bin/ should be makes manual linking fail too
        settings.bin_dir.rmdir()
        settings.bin_dir.write_text("not a directory")

        result = switch_manager.switch_version('8.1', settings, shell_kind=SHELL_ZSH)
        assert not result.success
        assert result.state is SwitchState.LINK_NEW
        assert not (settings.home / '.zshrc').exists()

    def test_profile_failure_keeps_link(self, settings, fake_brew):
        make_installed(settings.brew_prefix, 'php@8.1')
        (settings.home / '.zshrc').mkdir()

        result = switch_manager.switch_version('8.1', settings, shell_kind=SHELL_ZSH)
        assert not result.success
        assert 'Shell profile not updated' in result.error
        assert result.state is SwitchState.UPDATE_PROFILE
        assert result.link_strategy is LinkStrategy.STANDARD
        assert php_manager.get_linked(settings) == VersionId(8, 1)

    def test_service_restarted_when_enabled(self, settings, fake_brew):
        settings = replace(settings, auto_restart_php_fpm=True)
        make_installed(settings.brew_prefix, 'php@8.1')
        fake_brew.services = {'php@7.4': 'started'}

        result = switch_manager.switch_version('8.1', settings, shell_kind=SHELL_ZSH)
        assert result.success
        assert fake_brew.services == {'php@7.4': 'none', 'php@8.1': 'started'}

    def test_service_failure_is_only_a_warning(self, settings, fake_brew):
        settings = replace(settings, auto_restart_php_fpm=True)
        make_installed(settings.brew_prefix, 'php@8.1')
        fake_brew.failures[('brew', 'services', 'start', 'php@8.1')] = (1, "", "launchctl error")

        result = switch_manager.switch_version('8.1', settings, shell_kind=SHELL_ZSH)
        assert result.success
        assert any('php@8.1' in w for w in result.warnings)


def test_switch_to_project_version(settings, fake_brew, tmp_path):
    make_installed(settings.brew_prefix, 'php@8.2')
    project = tmp_path / 'project'
    (project / 'public').mkdir(parents=True)
    (project / '.php-version').write_text("8.2\n")

    result = switch_manager.switch_to_project_version(project / 'public', settings, shell_kind=SHELL_ZSH)
    assert result.success, result.error
    assert php_manager.get_linked(settings) == VersionId(8, 2)


class TestAutoSwitch:
    def _project(self, tmp_path, version):
        project = tmp_path / 'project'
        project.mkdir()
        (project / '.php-version').write_text(f"{version}\n")
        return project

    def test_disabled_by_default(self, settings, fake_brew, tmp_path):
        project = self._project(tmp_path, "8.1")
        assert switch_manager.auto_switch(project, settings) == (False, None)
        assert fake_brew.calls == []

    def test_switches_and_caches(self, settings, fake_brew, tmp_path):
        settings = replace(settings, auto_switch_php_version=True)
        make_installed(settings.brew_prefix, 'php@8.1')
        make_installed(settings.brew_prefix, 'php@8.3')
        php_manager.link(VersionId(8, 3), settings)
        project = self._project(tmp_path, "8.1")

        assert switch_manager.auto_switch(project, settings) == (True, VersionId(8, 1))
        assert php_manager.get_linked(settings) == VersionId(8, 1)
        assert auto_switch_manager.lookup_directory(settings, project.resolve()) == "php@8.1"
        assert switch_manager.auto_switch(project, settings) == (False, VersionId(8, 1))

    def test_missing_version_is_never_installed(self, settings, fake_brew, tmp_path):
        settings = replace(settings, auto_switch_php_version=True)
        project = self._project(tmp_path, "7.4")
        assert switch_manager.auto_switch(project, settings) == (False, None)
        assert fake_brew.called('brew', 'install') == []
        assert fake_brew.called('brew', 'link') == []

    def test_cached_miss_until_cleared(self, settings, fake_brew, tmp_path):
        settings = replace(settings, auto_switch_php_version=True)
        make_installed(settings.brew_prefix, 'php@8.1')
        project = tmp_path / 'plain'
        project.mkdir()
        assert switch_manager.auto_switch(project, settings) == (False, None)

        (project / '.php-version').write_text("8.1\n")
        assert switch_manager.auto_switch(project, settings) == (False, None)

        auto_switch_manager.clear_directory_cache(settings)
        assert switch_manager.auto_switch(project, settings) == (True, VersionId(8, 1))

    def test_changed_version_file_followed(self, settings, fake_brew, tmp_path):
        settings = replace(settings, auto_switch_php_version=True)
        make_installed(settings.brew_prefix, 'php@8.1')
        make_installed(settings.brew_prefix, 'php@8.2')
        project = tmp_path / 'project'
        project.mkdir()

        project_manager.set_project_version(project, VersionId(8, 1))
        assert switch_manager.auto_switch(project, settings) == (True, VersionId(8, 1))

        project_manager.set_project_version(project, VersionId(8, 2))
        assert switch_manager.auto_switch(project, settings) == (True, VersionId(8, 2))
        assert php_manager.get_linked(settings) == VersionId(8, 2)
        assert auto_switch_manager.lookup_directory(settings, project.resolve()) == "php@8.2"
