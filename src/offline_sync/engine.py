"""Composition root for offline-sync.

SyncEngine builds and owns the one event bus, scheduler, store,
connectivity monitor, conflict resolver and orchestrator of a process.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Optional, Union

from .config import Config
from .conflicts import ConflictOptions, ConflictResolver
from .connectivity import ConnectivityMonitor, ConnectivityOptions, ReachabilityProbe
from .database import Database
from .errors import ConfigurationError
from .events import EventBus
from .remote import HttpRemoteApplier, RemoteApplier
from .scheduler import Scheduler
from .sync_service import SyncOptions, SyncOrchestrator

logger = logging.getLogger(__name__)

__all__ = ["SyncEngine"]


class SyncEngine:
    """Owns every component of a running sync engine.

    Use from_config() to build from a Config, or the constructor to wire
    explicit options (tests, embedding).
    """

    def __init__(
        self,
        db_path: Union[Path, str],
        applier: RemoteApplier,
        probe: Optional[ReachabilityProbe] = None,
        sync_options: Optional[SyncOptions] = None,
        connectivity_options: Optional[ConnectivityOptions] = None,
        conflict_options: Optional[ConflictOptions] = None,
    ) -> None:
        self.events = EventBus()
        self.scheduler = Scheduler()
        self.db = Database(db_path)
        self.connectivity = ConnectivityMonitor(
            connectivity_options, probe, self.events, self.scheduler
        )
        self.resolver = ConflictResolver(self.db, conflict_options, self.events)
        self.orchestrator = SyncOrchestrator(
            self.db,
            self.connectivity,
            self.resolver,
            applier,
            scheduler=self.scheduler,
            events=self.events,
            options=sync_options,
        )
        self._closed = False

    @classmethod
    def from_config(
        cls,
        config: Config,
        applier: Optional[RemoteApplier] = None,
        probe: Optional[ReachabilityProbe] = None,
    ) -> "SyncEngine":
        """Build an engine from configuration.

        Raises:
            ConfigurationError: If no applier is given and remote.base_url
                is not configured
            ValidationError: If a configuration value is invalid
        """
        if applier is None:
            remote = config.get_remote_config()
            if not remote["base_url"]:
                raise ConfigurationError(
                    f"remote.base_url is not set in {config.config_file}"
                )
            applier = HttpRemoteApplier(
                remote["base_url"], timeout=remote["timeout"], headers=remote["headers"]
            )
        return cls(
            config.database_file,
            applier,
            probe=probe,
            sync_options=config.get_sync_options(),
            connectivity_options=config.get_connectivity_options(),
            conflict_options=config.get_conflict_options(),
        )

    def start(self) -> None:
        """Start the scheduler, connectivity monitoring and periodic sync."""
        self.scheduler.start()
        self.orchestrator.start()

    def stop(self) -> None:
        self.orchestrator.stop()
        self.scheduler.stop()

    def close(self) -> None:
        """Stop everything and close the database."""
        if self._closed:
            return
        self._closed = True
        self.orchestrator.close()
        self.scheduler.stop()
        self.db.close()
        logger.debug("Sync engine closed")

    def __enter__(self) -> "SyncEngine":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()
