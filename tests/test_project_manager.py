"""Tests for project version discovery and .php-version writing."""

import pytest

from phpswitch.core.errors import InvalidVersionError
from phpswitch.core.versions import VersionId
from phpswitch.managers import project_manager


class TestFindSource:
    def test_marker_priority(self, tmp_path):
        (tmp_path / '.php').write_text("7.4\n")
        (tmp_path / '.phpversion').write_text("8.0\n")
        (tmp_path / '.php-version').write_text("8.1\n")
        source = project_manager.find_project_version_source(tmp_path)
        assert source.path.name == '.php-version'
        assert source.raw == "8.1"

    def test_marker_beats_composer(self, tmp_path):
        (tmp_path / 'composer.json').write_text('{"require": {"php": "^8.2"}}')
        (tmp_path / '.phpversion').write_text("8.0")
        assert project_manager.find_project_version_source(tmp_path).kind == 'marker'

    def test_walks_up_to_parent(self, tmp_path):
        (tmp_path / '.php-version').write_text("8.2\n")
        deep = tmp_path / 'src' / 'app' / 'Http'
        deep.mkdir(parents=True)
        source = project_manager.find_project_version_source(deep)
        assert source.path == (tmp_path / '.php-version').resolve()

    def test_nearest_directory_wins(self, tmp_path):
        (tmp_path / '.php-version').write_text("7.4\n")
        child = tmp_path / 'child'
        child.mkdir()
        (child / '.php-version').write_text("8.3\n")
        assert project_manager.find_project_version_source(child).raw == "8.3"

    def test_tool_versions(self, tmp_path):
        (tmp_path / '.tool-versions').write_text("nodejs 20.1.0\nphp 8.2.12\n")
        source = project_manager.find_project_version_source(tmp_path)
        assert source.kind == 'tool-versions'
        assert source.raw == "8.2.12"


class TestComposer:
    def test_platform_before_require(self):
        content = '{"require": {"php": "^8.3"}, "config": {"platform": {"php": "8.1.0"}}}'
        assert project_manager.version_from_composer(content) == "8.1"

    def test_require_constraint(self):
        assert project_manager.version_from_composer('{"require": {"php": ">=7.4 <8.3"}}') == "7.4"

    def test_major_only_constraint(self):
        assert project_manager.version_from_composer('{"require": {"php": "^8"}}') == "8"

    def test_no_php(self):
        assert project_manager.version_from_composer('{"require": {"laravel/framework": "^10.0"}}') is None


class TestResolve:
    def test_bare_major_uses_installed(self, tmp_path):
        (tmp_path / '.php-version').write_text("8\n")
        installed = {VersionId(8, 1), VersionId(8, 3)}
        assert project_manager.resolve_project_version(tmp_path, installed) == VersionId(8, 3)

    def test_empty_marker_stops_search(self, tmp_path):
        (tmp_path / '.php-version').write_text("8.2\n")
        project = tmp_path / 'empty'
        project.mkdir()
        (project / '.php-version').write_text("")
        assert project_manager.resolve_project_version(project) is None

    @pytest.mark.parametrize("content", [
        "8.1; rm -rf ~\n",
        "$(touch /tmp/x)\n",
        "8.1\nphp@7.4\n",
        "8.1\x1b[31m",
        "9" * 100,
    ])
    def test_hostile_content_is_ignored(self, tmp_path, content):
        (tmp_path / '.php-version').write_text(content)
        assert project_manager.resolve_project_version(tmp_path) is None


class TestSetProjectVersion:
    def test_round_trip(self, tmp_path):
        written = project_manager.set_project_version(tmp_path, VersionId(8, 2))
        assert written == tmp_path / '.php-version'
        assert written.read_text() == "8.2\n"
        assert project_manager.resolve_project_version(tmp_path) == VersionId(8, 2)

    def test_default_written_as_word(self, tmp_path):
        written = project_manager.set_project_version(tmp_path, VersionId.default())
        assert written.read_text() == "default\n"
        assert project_manager.resolve_project_version(tmp_path) == VersionId.default()

    def test_overwrites_existing(self, tmp_path):
        (tmp_path / '.php-version').write_text("7.4\n")
        project_manager.set_project_version(tmp_path, VersionId(8, 4))
        assert (tmp_path / '.php-version').read_text() == "8.4\n"


def test_invalid_version_never_written(tmp_path):
    with pytest.raises(InvalidVersionError):
        project_manager.set_project_version(tmp_path, VersionId(123, 4))
    assert not (tmp_path / '.php-version').exists()
