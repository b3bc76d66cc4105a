"""
Plugin Setup Tests
==================
pytest-asyncio is loaded exactly once, whether through its entry point or
the root conftest.
"""

import asyncio

import pytest
import pytest_asyncio.plugin


@pytest.mark.unit
class TestPluginSetup:
    """Tests for the root conftest registration."""

    def test_asyncio_plugin_registered_once(self, request):
        manager = request.config.pluginmanager

        names = [name for name, plugin in manager.list_name_plugin() if plugin is pytest_asyncio.plugin]

        assert manager.is_registered(pytest_asyncio.plugin)
        assert len(names) == 1

    @pytest.mark.asyncio
    async def test_coroutine_tests_run_in_a_loop(self):
        assert asyncio.get_running_loop().is_running()
