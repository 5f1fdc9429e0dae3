"""Process-wide one-time initialization."""

import logging
from enum import Enum
from pathlib import Path
from typing import Optional

from .config import AppConfig, load_config
from .controller import PipelineController
from .errors import InvalidStateError
from .logging_setup import setup_logging
from .state import SessionStateManager

logger = logging.getLogger(__name__)


class BootstrapPhase(str, Enum):
    """Lifecycle of the process runtime."""

    INIT = "init"
    READY = "ready"


class Runtime:
    """Loads configuration and logging once, then hands out controllers."""

    def __init__(self):
        self._phase = BootstrapPhase.INIT
        self._config: Optional[AppConfig] = None

    @property
    def phase(self) -> BootstrapPhase:
        return self._phase

    @property
    def config(self) -> AppConfig:
        if self._config is None:
            raise InvalidStateError("Runtime has not been initialized")
        return self._config

    def initialize(
        self, config: Optional[AppConfig] = None, config_path: Optional[Path] = None
    ) -> AppConfig:
        """Load configuration and configure logging.

        Args:
            config: Ready configuration to use instead of loading one.
            config_path: Optional config file path when loading.

        Raises:
            InvalidStateError: If the runtime is already initialized.
            ValueError: If the configuration is invalid.
        """
        if self._phase is BootstrapPhase.READY:
            raise InvalidStateError("Runtime is already initialized")

        if config is None:
            config = load_config(config_path)

        setup_logging(config.daemon.log_level, config.daemon.computed_log_file)
        self._config = config
        self._phase = BootstrapPhase.READY
        logger.info("Runtime initialized")
        return config

    def create_controller(
        self, state_manager: Optional[SessionStateManager] = None
    ) -> PipelineController:
        """Create a pipeline controller bound to the loaded configuration.

        Raises:
            InvalidStateError: If the runtime is not initialized yet.
        """
        if self._phase is not BootstrapPhase.READY:
            raise InvalidStateError("Runtime must be initialized before creating controllers")
        return PipelineController(self.config, state_manager)
