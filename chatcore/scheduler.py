import asyncio
import logging
from typing import Awaitable, Callable, List, Set, Tuple

logger = logging.getLogger("uvicorn.error")

Job = Tuple[str, Callable[[], Awaitable[None]]]


class BackgroundScheduler:
    """Runs post-response jobs on tracked tasks that are joined at shutdown.

    Jobs of one batch run in order; each job's failure is logged and does not
    stop the jobs after it.
    """

    def __init__(self) -> None:
        self._tasks: Set[asyncio.Task] = set()
        self.completed = 0
        self.failed = 0

    @property
    def pending(self) -> int:
        return sum(1 for t in self._tasks if not t.done())

    def schedule(self, name: str, jobs: List[Job]) -> asyncio.Task:
        task = asyncio.create_task(self._run(name, jobs), name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, name: str, jobs: List[Job]) -> None:
        for label, job in jobs:
            try:
                await job()
                self.completed += 1
            except Exception:
                self.failed += 1
                logger.exception("Background job %s/%s failed", name, label)

    async def drain(self, timeout: float = 30.0) -> bool:
        """Wait for every scheduled job; returns False if the timeout expired first."""
        tasks = [t for t in self._tasks if not t.done()]
        if not tasks:
            return True
        logger.info("Waiting for %s background job batch(es) to finish", len(tasks))
        _, still_pending = await asyncio.wait(tasks, timeout=timeout)
        if still_pending:
            logger.warning("%s background job batch(es) still running after %.0fs", len(still_pending), timeout)
            return False
        return True
