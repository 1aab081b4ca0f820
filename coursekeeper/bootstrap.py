"""Bootstrap logic that prepares runtime directories and wires the services."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from . import config as config_module
from .config import AppConfig, load_config
from .errors import BootstrapError
from .services.library import CourseLibrary
from .services.locks import CourseLocks
from .services.playback import ProgressPersister
from .services.storage import CourseRepository, create_repository
from .services.timestamps import TimestampStore

LOGGER = logging.getLogger(__name__)


@dataclass
class Services:
    """The long-lived objects shared by the CLI and the web application."""

    config: AppConfig
    repository: CourseRepository
    library: CourseLibrary
    persister: ProgressPersister
    timestamps: TimestampStore


class Bootstrapper:
    """Prepare runtime directories and assemble the service graph for a config."""

    def __init__(self, config: AppConfig) -> None:
        self._config = config

    @property
    def config(self) -> AppConfig:
        return self._config

    def initialize(self) -> None:
        """Run all bootstrap tasks."""

        LOGGER.debug("Preparing storage root %s", self._config.storage_root)
        self._ensure_directories()
        LOGGER.info("Storage ready at %s", self._config.storage_root)

    def _ensure_directories(self) -> None:
        storage_root = self._config.storage_root
        if not config_module._ensure_writable_directory(storage_root):
            raise BootstrapError(f"Storage directory '{storage_root}' is not writable")
        LOGGER.debug("Ensured directory exists: %s", storage_root)

    def build_services(self) -> Services:
        """Create the repository, library and progress persister for this config."""

        repository = create_repository(self._config)
        locks = CourseLocks()
        persister = ProgressPersister(repository, self._config.library, locks=locks)
        library = CourseLibrary(
            repository,
            self._config.library,
            locks=locks,
            persister=persister,
        )
        LOGGER.debug(
            "Services ready (backend=%s, debounce=%.2fs)",
            self._config.repository_backend,
            self._config.library.debounce_seconds,
        )
        return Services(
            config=self._config,
            repository=repository,
            library=library,
            persister=persister,
            timestamps=TimestampStore(),
        )


def initialize_app(config_path: Path | None = None) -> AppConfig:
    """Load the configuration and make sure its storage root is usable."""

    config = load_config(config_path=config_path)
    bootstrapper = Bootstrapper(config)
    bootstrapper.initialize()
    return config


__all__ = ["BootstrapError", "Bootstrapper", "Services", "initialize_app"]
