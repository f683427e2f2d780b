"""
Application wiring shared by the HTTP server and the CLI.

Builds the item database pool, the import job registry and the
orchestrator from EngineSettings, and owns their lifecycle.
"""

from typing import Optional

from .core.orchestrator import BatchOrchestrator
from .core.registry import JobRegistry
from .jobs.csv_import import build_registry
from .utils.config import EngineSettings
from .utils.database import DatabaseManager
from .utils.logger import get_logger


class BatchApplication:
    """The import jobs plus the engine that runs them."""

    def __init__(
        self,
        settings: EngineSettings,
        orchestrator: BatchOrchestrator,
        database_manager: Optional[DatabaseManager] = None
    ):
        self.settings = settings
        self.orchestrator = orchestrator
        self.database_manager = database_manager
        self.logger = get_logger(__name__)

    @classmethod
    def from_settings(cls, settings: EngineSettings, registry: Optional[JobRegistry] = None) -> "BatchApplication":
        database_manager = DatabaseManager(
            settings.database_url,
            pool_size=settings.pool_size,
            max_overflow=settings.max_overflow
        )
        registry = registry or build_registry(settings, database_manager)
        orchestrator = BatchOrchestrator.from_settings(settings, registry, database_manager)
        return cls(settings, orchestrator, database_manager)

    async def start(self):
        if self.database_manager is not None:
            await self.database_manager.initialize()
        await self.orchestrator.start()
        self.logger.info("Batch application started", extra={
            "store": self.settings.store,
            "jobs": self.orchestrator.registry.get_job_names()
        })

    async def stop(self, timeout: Optional[float] = None):
        await self.orchestrator.stop(timeout=timeout)
        if self.database_manager is not None:
            await self.database_manager.close()
