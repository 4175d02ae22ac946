"""Tests for installed/available version listing and the available-versions cache."""

import os
import time

from phpswitch.core import config
from phpswitch.core.system_utils import CODE_TIMEOUT
from phpswitch.core.versions import VersionId
from phpswitch.managers import registry_manager

from conftest import make_installed


def _cache(settings):
    return settings.cache_dir / config.AVAILABLE_CACHE_NAME


def _write_cache(settings, text, age=0):
    cache = _cache(settings)
    cache.parent.mkdir(parents=True, exist_ok=True)
    cache.write_text(text)
    if age:
        old = time.time() - age
        os.utime(cache, (old, old))
    return cache


class TestListInstalled:
    def test_maps_formulae(self, settings, fake_brew):
        make_installed(settings.brew_prefix, 'php@8.1')
        make_installed(settings.brew_prefix, 'php')
        assert registry_manager.list_installed() == {VersionId(8, 1), VersionId.default()}

    def test_brew_failure_gives_empty_set(self, settings, fake_brew):
        fake_brew.failures[('brew', 'list', '--formula', '-1')] = (1, "", "boom")
        assert registry_manager.list_installed() == set()


class TestAvailableCache:
    def test_fresh_cache_short_circuits(self, settings, fake_brew):
        _write_cache(settings, "php@8.2\nphp@8.3\n")
        assert registry_manager.list_available(settings) == [VersionId(8, 2), VersionId(8, 3)]
        assert fake_brew.called('brew', 'search') == []

    def test_stale_cache_triggers_refresh(self, settings, fake_brew):
        cache = _write_cache(settings, "php@7.0\n", age=settings.cache_ttl + 60)
        versions = registry_manager.list_available(settings)
        assert len(fake_brew.called('brew', 'search')) == 2
        assert versions == [VersionId(8, 1), VersionId(8, 2), VersionId(8, 3), VersionId.default()]
        assert cache.read_text() == "php@8.1\nphp@8.2\nphp@8.3\nphp@default\n"
        assert registry_manager.is_cache_fresh(cache, settings.cache_ttl)

    def test_force_refresh_ignores_fresh_cache(self, settings, fake_brew):
        _write_cache(settings, "php@7.0\n")
        registry_manager.refresh_cache(settings)
        assert fake_brew.called('brew', 'search')

    def test_timeout_uses_builtin_fallback(self, settings, fake_brew):
        fake_brew.failures[('brew', 'search', '/php@[0-9]/')] = (CODE_TIMEOUT, "", "timed out")
        versions = registry_manager.list_available(settings)
        assert versions == [VersionId(7, 4), VersionId(8, 0), VersionId(8, 1), VersionId(8, 2),
                            VersionId(8, 3), VersionId(8, 4), VersionId.default()]

    def test_last_good_result_preferred_over_builtin(self, settings, fake_brew):
        registry_manager.list_available(settings, force_refresh=True)
        fake_brew.failures[('brew', 'search', '/php@[0-9]/')] = (CODE_TIMEOUT, "", "timed out")
        versions = registry_manager.list_available(settings, force_refresh=True)
        assert versions == [VersionId(8, 1), VersionId(8, 2), VersionId(8, 3), VersionId.default()]

    def test_second_pattern_failure_keeps_first_results(self, settings, fake_brew):
        fake_brew.failures[('brew', 'search', '/^php$/')] = (1, "", "Error: API unavailable")
        versions = registry_manager.list_available(settings, force_refresh=True)
        assert versions == [VersionId(8, 1), VersionId(8, 2), VersionId(8, 3)]

    def test_failed_pattern_skipped(self, settings, fake_brew):
        fake_brew.failures[('brew', 'search', '/php@[0-9]/')] = (1, "", "Error: API unavailable")
        assert registry_manager.search_available(settings) == [VersionId.default()]
        assert len(fake_brew.called('brew', 'search')) == 2

    def test_search_passes_remaining_timeout(self, settings, fake_brew, monkeypatch):
        seen = []

        def recording(cmd, timeout=None):
            seen.append(timeout)
            return fake_brew(cmd, timeout)
        monkeypatch.setattr(registry_manager, 'run_command', recording)
        registry_manager.search_available(settings)
        assert all(0 < t <= settings.search_timeout for t in seen)

    def test_clear_cache(self, settings, fake_brew):
        cache = _write_cache(settings, "php@8.2\n")
        assert registry_manager.clear_cache(settings)
        assert not cache.exists()


def test_parse_search_output_handles_columns_and_taps():
    output = "php@7.4    php@8.0\nshivammathur/php/php@5.6\nphpunit\n"
    assert registry_manager.parse_search_output(output) == [VersionId(5, 6), VersionId(7, 4), VersionId(8, 0)]
