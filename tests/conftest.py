"""
hotgraft Test Fixtures

Plugin sources are written to temporary files and loaded the same way a
host loads real builds.
"""

import itertools
import sys
import textwrap
from pathlib import Path
from typing import Callable, List, Optional

import pytest
import structlog

from hotgraft.commands import CommandTable
from hotgraft.config import ReloadConfig, reset_config
from hotgraft.loader import ModuleContext
from hotgraft.reloader import ReloadOrchestrator
from hotgraft.types import PluginInfo, PluginRecord


@pytest.fixture(autouse=True)
def quiet_structlog():
    """Send log output to stderr so tests can read stdout."""
    structlog.configure(
        processors=[structlog.processors.add_log_level, structlog.dev.ConsoleRenderer(colors=False)],
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=False,
    )
    yield
    structlog.reset_defaults()


@pytest.fixture(autouse=True)
def fresh_config():
    """Each test starts from default settings."""
    reset_config()
    yield
    reset_config()


@pytest.fixture
def write_plugin(tmp_path) -> Callable[..., Path]:
    """Write plugin source to a new file and return its path."""
    counter = itertools.count(1)

    def write(source: str, name: Optional[str] = None) -> Path:
        path = tmp_path / (name or f"plugin_{next(counter)}.py")
        path.write_text(textwrap.dedent(source))
        return path

    return write


@pytest.fixture
def load_module(write_plugin):
    """Load plugin source into its own module context."""
    contexts: List[ModuleContext] = []

    def load(source: str):
        context = ModuleContext()
        contexts.append(context)
        return context.load(write_plugin(source))

    yield load

    for context in contexts:
        context.unload()


@pytest.fixture
def config() -> ReloadConfig:
    return ReloadConfig(cleanup_delay_seconds=0.05)


@pytest.fixture
def commands() -> CommandTable:
    return CommandTable()


@pytest.fixture
def orchestrator(commands, config) -> ReloadOrchestrator:
    orchestrator = ReloadOrchestrator(commands, config)
    yield orchestrator
    orchestrator.wait_for_cleanups(timeout=5.0)


@pytest.fixture
def record() -> PluginRecord:
    return PluginRecord(info=PluginInfo(name="sample", description="test plugin"))
