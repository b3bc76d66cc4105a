# Root conftest to ensure pytest-asyncio is loaded early
import pytest_asyncio.plugin


def pytest_configure(config):
    manager = config.pluginmanager
    # The entry point registers it as "asyncio"
    if manager.is_registered(pytest_asyncio.plugin) or manager.hasplugin("asyncio"):
        return
    if not manager.hasplugin("pytest_asyncio"):
        manager.register(pytest_asyncio.plugin, name="pytest_asyncio")
