"""Command line interface for running the API server."""
import asyncio
import logging
import signal
import uvicorn

from database import init_db, close as db_close, get_capabilities

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Global instances
server = None
should_exit = False

def handle_shutdown(signum, frame):
    """Handle shutdown signals gracefully."""
    global should_exit
    logger.info("Shutdown signal received. Cleaning up...")
    should_exit = True

async def startup():
    """Initialize database and resolve schema capabilities."""
    logger.info("Initializing database...")
    await init_db()
    capabilities = await get_capabilities()
    if capabilities.legacy:
        logger.warning(f"Running against a legacy schema: {capabilities}")
    else:
        logger.info("Database schema is current")

class UvicornServer:
    """Wrapper for running uvicorn with proper lifecycle management."""

    def __init__(self, app_path: str = "api:app", host: str = "0.0.0.0", port: int = 8000):
        self.config = uvicorn.Config(
            app_path,
            host=host,
            port=port,
            log_level="info"
        )
        self.server = uvicorn.Server(self.config)

    async def run(self):
        """Run the server in a way that can be stopped."""
        await self.server.serve()

    async def stop(self):
        """Stop the server."""
        self.server.should_exit = True
        if hasattr(self.server, 'force_exit'):
            self.server.force_exit = True

async def run_api():
    """Run the API server."""
    global server
    server = UvicornServer()
    await server.run()

async def main():
    """Run the API server until a shutdown signal arrives."""
    global server, should_exit

    try:
        # Register signal handlers in main thread
        signal.signal(signal.SIGINT, handle_shutdown)
        signal.signal(signal.SIGTERM, handle_shutdown)

        await startup()

        task = asyncio.create_task(run_api(), name="api")
        logger.info("API server started")

        # Wait for shutdown signal
        while not should_exit:
            await asyncio.sleep(1)

            if task.done() and not task.cancelled():
                exc = task.exception()
                if exc:
                    logger.error(f"Task {task.get_name()} failed with error: {exc}")
                should_exit = True

        logger.info("Starting cleanup...")

    except Exception as e:
        logger.error(f"Fatal error: {e}")
    finally:
        if server:
            logger.info("Stopping API server...")
            await server.stop()

        # Cancel all tasks
        for pending in asyncio.all_tasks():
            if pending is not asyncio.current_task() and not pending.done():
                pending.cancel()
                try:
                    await pending
                except asyncio.CancelledError:
                    pass

        logger.info("Closing database connections...")
        await db_close()

        logger.info("Cleanup complete.")

if __name__ == "__main__":
    # Use uvloop if available for better performance
    try:
        import uvloop
        uvloop.install()
    except ImportError:
        pass

    asyncio.run(main())
