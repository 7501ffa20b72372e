import asyncio
import logging

from chatrelay.services.connection_manager import ConnectionManager

logger = logging.getLogger(__name__)


class ShutdownCoordinator:
    """Drains the connection manager when the process is terminating.

    New sessions are refused from the moment ``run`` starts. Every live client,
    and every client whose deferred destruction is still pending, is destroyed
    concurrently; the whole sequence is capped at ``timeout`` seconds and
    individual failures never abort it.
    """

    def __init__(self, manager: ConnectionManager, timeout: float):
        self.manager = manager
        self.timeout = timeout
        self.completed = False

    async def run(self) -> int:
        sessions = self.manager.detach_all()
        logger.info("Shutdown: cleaning up %d messaging clients", len(sessions))

        if sessions:
            tasks = [asyncio.create_task(self.manager.retire(s)) for s in sessions]
            done, pending = await asyncio.wait(tasks, timeout=self.timeout)
            for task in pending:
                task.cancel()
            if pending:
                logger.warning(
                    "Shutdown: %d clients still destroying after %.1fs, abandoned",
                    len(pending),
                    self.timeout,
                )
            for task in done:
                if task.exception() is not None:
                    logger.warning("Shutdown: client cleanup failed: %s", task.exception())

        self.manager.cancel_background()
        await self.manager.relay.drain(timeout=1.0)
        self.completed = True
        logger.info("Shutdown: graceful shutdown complete")
        return len(sessions)
