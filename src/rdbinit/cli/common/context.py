"""Application context management for the CLI."""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Callable

from rdbinit.cli.common.exits import exit_from_exc
from rdbinit.core.config import InitSettings
from rdbinit.core.directory import DirectoryService
from rdbinit.core.errors import DirectoryError
from rdbinit.core.lock import SchemaLock
from rdbinit.core.models import ConflictPolicy, ConnectionConfig


def connect_directory(config: ConnectionConfig) -> DirectoryService:
    """Open a RethinkDB Directory Service session."""
    from rdbinit.core.adapters.rethink import RethinkDirectory

    return RethinkDirectory.connect(config)


@dataclass
class AppContext:
    """Application context holding connection defaults, settings and the session factory."""

    host: str
    port: int
    user: str
    password: str
    settings: InitSettings
    connect: Callable[[ConnectionConfig], DirectoryService]

    def config_for(self, db: str) -> ConnectionConfig:
        """Return the connection config targeting database `db`."""
        return ConnectionConfig(
            db=db,
            host=self.host,
            port=self.port,
            user=self.user,
            password=self.password,
        )

    def settings_with(
        self,
        *,
        conflict_policy: ConflictPolicy | None = None,
        lock_timeout: float | None = None,
        state_file: str | None = None,
    ) -> InitSettings:
        """Return the settings with command-line overrides applied."""
        settings = self.settings
        if conflict_policy is not None:
            settings = replace(settings, conflict_policy=conflict_policy)
        if lock_timeout is not None:
            settings = replace(settings, lock_timeout=lock_timeout)
        if state_file:
            settings = replace(settings, state_file=state_file)
        return settings

    def open_directory(self, db: str) -> DirectoryService:
        """Connect to the store or exit with code 1."""
        try:
            return self.connect(self.config_for(db))
        except DirectoryError as exc:
            exit_from_exc(exc, message=f"Cannot establish connection: {exc}", code=1)

    def lock_for(self, db: str, settings: InitSettings | None = None) -> SchemaLock:
        settings = settings or self.settings
        return SchemaLock(
            db,
            lock_dir=settings.lock_dir,
            prefix=settings.lock_prefix,
            poll_interval=settings.lock_poll_interval,
            lease_ttl=settings.lease_ttl,
        )


def build_context(
    *,
    host: str,
    port: int,
    user: str,
    password: str,
    lock_dir: str | None = None,
) -> AppContext:
    """Build the application context from the global options and environment."""
    settings = InitSettings.from_env()
    if lock_dir:
        settings.lock_dir = lock_dir
    return AppContext(
        host=host,
        port=port,
        user=user,
        password=password,
        settings=settings,
        connect=connect_directory,
    )
