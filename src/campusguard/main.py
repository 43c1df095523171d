"""
CampusGuard Main Application Entry Point

Initializes configuration, logging and the database, wires the safety
services and serves the HTTP/WebSocket API. The check-in scheduler runs for
the lifetime of the application.
"""

import asyncio
import signal
import sys
from typing import Any, Dict, Optional

import uvicorn

from .core.clock import SystemClock
from .core.config import ConfigurationManager
from .core.database import DatabaseManager, initialize_database
from .core.logging import get_logger, initialize_logging
from .services.container import ServiceContainer, build_services
from .services.web.api import create_app
from .services.web.websocket_hub import WebSocketHub


class CampusGuardApplication:
    """Main CampusGuard application class"""

    def __init__(self, config_dir: str = "config"):
        self.config_dir = config_dir
        self.config_manager: Optional[ConfigurationManager] = None
        self.db_manager: Optional[DatabaseManager] = None
        self.services: Optional[ServiceContainer] = None
        self.hub: Optional[WebSocketHub] = None
        self.server: Optional[uvicorn.Server] = None
        self.logger = None

        self.running = False
        self.shutdown_event = asyncio.Event()

    async def initialize(self):
        """Initialize all application components"""
        print("Initializing CampusGuard...")

        self.config_manager = ConfigurationManager(self.config_dir)
        self.config_manager.load_config()

        initialize_logging(self.config_manager.config)
        self.logger = get_logger('main')

        self.logger.info("CampusGuard starting up...")
        self.logger.info(f"Version: {self.config_manager.get('app.version', '1.0.0')}")
        self.logger.info(f"Debug mode: {self.config_manager.get('app.debug', False)}")

        self.db_manager = initialize_database(
            self.config_manager.get('database.path'),
            self.config_manager.get('database.max_connections', 10)
        )

        self.hub = WebSocketHub()
        self.services = build_services(self.config_manager, self.db_manager, SystemClock(), self.hub)

        if self.config_manager.get('web.enabled', True):
            app = create_app(self.services, self.hub)
            self.server = uvicorn.Server(uvicorn.Config(
                app,
                host=self.config_manager.get('web.host', '0.0.0.0'),
                port=self.config_manager.get('web.port', 8080),
                log_config=None
            ))

        self.logger.info("CampusGuard initialized")

    async def start(self):
        """Start the application"""
        await self.initialize()

        self.running = True
        self.logger.info("CampusGuard is now running")

        try:
            if self.server:
                await self._serve()
            else:
                signal.signal(signal.SIGTERM, self._signal_handler)
                signal.signal(signal.SIGINT, self._signal_handler)
                await self.services.scheduler.start()
                await self._main_loop()

        except Exception as e:
            self.logger.error(f"Application error: {e}", exc_info=True)
            raise
        finally:
            await self.shutdown()

    async def _serve(self):
        """Serve the API; the app's lifespan runs the scheduler"""
        stats_task = asyncio.create_task(self._stats_reporter_loop())
        try:
            await self.server.serve()
        finally:
            stats_task.cancel()
            await asyncio.gather(stats_task, return_exceptions=True)

    async def _main_loop(self):
        """Run without the web layer until a shutdown signal arrives"""
        self.logger.info("Entering main application loop (web disabled)")

        stats_task = asyncio.create_task(self._stats_reporter_loop())
        try:
            await self.shutdown_event.wait()
            self.logger.info("Shutdown signal received")
        finally:
            stats_task.cancel()
            await asyncio.gather(stats_task, return_exceptions=True)

    async def _stats_reporter_loop(self):
        """Report system statistics periodically"""
        while self.running:
            try:
                await asyncio.sleep(300)

                status = self.get_system_status()
                self.logger.info(
                    f"System Stats - "
                    f"Scheduler ticks: {status['scheduler']['ticks']}, "
                    f"Notifications: {status['notifications']['jobs_dispatched']} dispatched, "
                    f"{status['notifications']['channel_failures']} channel failures, "
                    f"{status['notifications']['pending_jobs']} pending"
                )

            except asyncio.CancelledError:
                break
            except Exception as e:
                self.logger.error(f"Error in stats reporter: {e}")

    def _signal_handler(self, signum, frame):
        """Handle shutdown signals"""
        self.logger.info(f"Received signal {signum}")
        self.shutdown_event.set()

    async def shutdown(self):
        """Shutdown the application gracefully"""
        if not self.running:
            return

        self.logger.info("Shutting down CampusGuard...")
        self.running = False

        try:
            if self.services:
                await self.services.shutdown()

            if self.db_manager:
                self.db_manager.close()

            self.logger.info("CampusGuard shutdown complete")

        except Exception as e:
            self.logger.error(f"Error during shutdown: {e}")

    def get_system_status(self) -> Dict[str, Any]:
        """Get system status"""
        return {
            'running': self.running,
            'scheduler': self.services.scheduler.get_status(),
            'notifications': self.services.dispatcher.get_statistics(),
            'realtime': self.services.broadcaster.get_statistics(),
            'database': self.db_manager.get_stats()
        }


async def run():
    app = CampusGuardApplication()

    try:
        await app.start()
    except KeyboardInterrupt:
        print("\nShutdown requested by user")
    except Exception as e:
        print(f"Application failed to start: {e}")
        sys.exit(1)


def main():
    """Console entry point"""
    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        print("\nApplication interrupted")
        sys.exit(0)


if __name__ == "__main__":
    main()
