"""Main entry point - runs the API with its background workers."""

import asyncio
import logging
import signal

import uvicorn

from spendguard.api.app import create_app
from spendguard.config import get_settings

logger = logging.getLogger(__name__)


class Application:
    """Main application that runs the API server.

    The reconciliation worker and notification dispatcher are started by
    the API lifespan, so they stop together with the server.
    """

    def __init__(self):
        self.settings = get_settings()
        self.server = None
        self._shutdown_event = asyncio.Event()

    async def start(self):
        """Start all services."""
        # Configure logging
        log_level = logging.DEBUG if self.settings.debug else logging.INFO
        logging.basicConfig(
            level=log_level,
            format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        )

        logger.info("Starting SpendGuard...")
        logger.info(f"Environment: {self.settings.environment}")
        if self.settings.dry_run:
            logger.warning("DRY_RUN enabled - chain clients are simulated")
        if not self.settings.webhook_secrets:
            logger.warning("CARD_WEBHOOK_SECRETS not set - card webhooks will be rejected")

        api_task = asyncio.create_task(self._run_api())
        logger.info("API task created")

        # Wait for shutdown signal or server exit
        shutdown_task = asyncio.create_task(self._shutdown_event.wait())
        await asyncio.wait({api_task, shutdown_task}, return_when=asyncio.FIRST_COMPLETED)

        # Let uvicorn run the lifespan shutdown
        if self.server is not None:
            self.server.should_exit = True
        await asyncio.gather(api_task, return_exceptions=True)
        shutdown_task.cancel()

        logger.info("Shutdown complete")

    async def _run_api(self):
        """Run the FastAPI server."""
        try:
            app = create_app()
            config = uvicorn.Config(
                app,
                host=self.settings.api_host,
                port=self.settings.api_port,
                log_level="debug" if self.settings.debug else "info",
            )
            self.server = uvicorn.Server(config)
            logger.info(f"Starting API server on {self.settings.api_host}:{self.settings.api_port}")
            await self.server.serve()
        except asyncio.CancelledError:
            logger.info("API server cancelled")
        except Exception as e:
            logger.error(f"API error: {e}")
            raise

    def shutdown(self):
        """Signal shutdown."""
        logger.info("Shutdown requested")
        self._shutdown_event.set()


def main():
    """Main entry point."""
    app = Application()

    # Setup signal handlers
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, app.shutdown)

    try:
        loop.run_until_complete(app.start())
    except KeyboardInterrupt:
        logger.info("Keyboard interrupt received")
    finally:
        loop.close()


if __name__ == "__main__":
    main()
