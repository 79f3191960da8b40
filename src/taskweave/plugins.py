"""Plugin framework: Protocol-based plugin system with entry point discovery."""

from __future__ import annotations

import logging
from importlib.metadata import entry_points
from typing import TYPE_CHECKING, Protocol, runtime_checkable

import click
from pydantic_settings import BaseSettings

from taskweave.db import DbConnection

if TYPE_CHECKING:
    from taskweave.tools import ToolSource

log = logging.getLogger(__name__)

ENTRY_POINT_GROUP = "taskweave.plugins"


@runtime_checkable
class TaskweavePlugin(Protocol):
    """Protocol that all taskweave plugins must satisfy."""

    def register_commands(self, group: click.Group) -> None:
        """Register CLI commands with the Click group."""
        ...

    def get_tool_sources(self, db: DbConnection, owner: str) -> list[ToolSource]:
        """Return tool sources offered to the execution capability."""
        ...

    def get_db_migrations(self) -> list[str]:
        """Return SQL statements for database migrations."""
        ...

    def get_config_class(self) -> type[BaseSettings] | None:
        """Return a Pydantic Settings class for plugin configuration."""
        ...


class TaskweavePluginBase:
    """Base class with default no-op implementations for all plugin methods."""

    def register_commands(self, group: click.Group) -> None:
        pass

    def get_tool_sources(self, db: DbConnection, owner: str) -> list[ToolSource]:
        return []

    def get_db_migrations(self) -> list[str]:
        return []

    def get_config_class(self) -> type[BaseSettings] | None:
        return None


def load_plugins() -> list[TaskweavePlugin]:
    plugins: list[TaskweavePlugin] = []
    for ep in entry_points(group=ENTRY_POINT_GROUP):
        try:
            plugin_cls = ep.load()
            plugin = plugin_cls()
            plugins.append(plugin)
            log.debug("Loaded plugin %r from %s", ep.name, ep.value)
        except Exception:
            log.exception("Failed to load plugin %r", ep.name)
    return plugins


def run_db_migrations(db: DbConnection, plugins: list[TaskweavePlugin]) -> None:
    for plugin in plugins:
        for sql in plugin.get_db_migrations():
            try:
                db.executescript(sql)
            except Exception:
                log.exception("Failed to run migration from %s", type(plugin).__name__)


def plugin_tool_sources(
    plugins: list[TaskweavePlugin], db: DbConnection, owner: str
) -> list[ToolSource]:
    """Gather tool sources from every plugin; a failing plugin contributes none."""
    sources: list[ToolSource] = []
    for plugin in plugins:
        try:
            contributed = plugin.get_tool_sources(db, owner)
        except Exception:
            log.exception("Failed to get tool sources from %s", type(plugin).__name__)
            continue
        sources.extend(contributed)
        log.debug(
            "%s contributed tool sources %s",
            type(plugin).__name__,
            [s.name for s in contributed],
        )
    return sources
