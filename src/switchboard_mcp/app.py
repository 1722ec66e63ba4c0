"""
Main application class for Switchboard MCP.
"""

from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

from switchboard_mcp.config.settings import Settings, load_config
from switchboard_mcp.mcp.server_registry import ServerRegistry
from switchboard_mcp.utils.logging import configure_logging, get_logger


class SwitchboardApp:
    """
    Process-level entry point: loads the configuration once, configures
    logging and opens a ``ServerRegistry`` built from it.

    Example usage:
        app = SwitchboardApp(config_path="switchboard_mcp.config.yaml")

        async with app.run() as registry:
            await registry.connect_all()
            print(await registry.process_query("List the open issues"))
    """

    def __init__(
        self,
        name: str = "switchboard_app",
        config_path: Optional[str] = None,
        settings: Optional[Settings] = None,
        **registry_kwargs: Any,
    ):
        """
        Args:
            name: Name of the application, used for its logger.
            config_path: Path to configuration file (if not provided, looks for switchboard_mcp.config.yaml).
            settings: Configuration object (if provided, takes precedence over config_path).
            registry_kwargs: Passed to ``ServerRegistry`` (factories and observers).
        """
        self.name = name
        self._config_path = config_path
        self._settings = settings
        self._registry_kwargs = registry_kwargs
        self._registry: Optional[ServerRegistry] = None
        self._logger = None

    @property
    def config(self) -> Settings:
        """Get the application configuration, loading it on first use."""
        if self._settings is None:
            self._settings = load_config(self._config_path)
        return self._settings

    @property
    def registry(self) -> ServerRegistry:
        if self._registry is None:
            raise RuntimeError("SwitchboardApp is not running. Use async with app.run().")
        return self._registry

    @property
    def logger(self):
        if self._logger is None:
            self._logger = get_logger(f"switchboard_mcp.{self.name}")
        return self._logger

    @asynccontextmanager
    async def run(self) -> AsyncGenerator[ServerRegistry, None]:
        """
        Run the application as an async context manager.

        Yields:
            The entered server registry; every connection is closed on exit.
        """
        settings = self.config
        configure_logging(settings.logging.level, settings.logging.file_path)

        registry = ServerRegistry.from_settings(settings, **self._registry_kwargs)
        self.logger.info(
            f"SwitchboardApp starting - app_name: {self.name}",
            data={"servers": registry.server_names()},
        )
        async with registry:
            self._registry = registry
            try:
                yield registry
            finally:
                self._registry = None
                self.logger.info(f"SwitchboardApp shutting down - app_name: {self.name}")
