import asyncio
import logging
import uuid
from typing import Awaitable, Callable, List, Optional, Tuple

from framethumb.schemas import GenerationResult, SchedulerStats, TaskStatus

log = logging.getLogger(__name__)


class GenerationTask:
    """A deferred unit of work, owned by the scheduler until its result is delivered."""

    def __init__(self, run: Callable[[], Awaitable[GenerationResult]], label: str = ""):
        self.task_id = str(uuid.uuid4())
        self.run = run
        self.label = label
        self.status: TaskStatus = "pending"


class GenerationScheduler:
    """Runs at most ``limit`` tasks at once; everything else waits in FIFO order.

    A fixed pool of worker coroutines drains an unbounded queue, so admission
    follows submission order. A task that raises becomes a failed result and
    the worker moves on to the next one.
    """

    def __init__(self, limit: int = 5) -> None:
        if limit < 1:
            raise ValueError("limit must be at least 1")
        self.limit = limit
        self.queue: "asyncio.Queue[Tuple[GenerationTask, asyncio.Future]]" = asyncio.Queue()
        self._workers: List[asyncio.Task] = []
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._running = 0
        self._peak_running = 0
        self._completed = 0
        self._failed = 0

    def start(self) -> None:
        loop = asyncio.get_running_loop()
        if self._workers and self._loop is loop:
            return
        if self._loop is not None and self._loop is not loop:
            self._abandon_loop()
        self._loop = loop
        self._workers = [asyncio.create_task(self._worker_loop(i)) for i in range(self.limit)]
        log.info("[SCHEDULER START] workers=%d", self.limit)

    def _abandon_loop(self) -> None:
        """Stop workers bound to the previous loop and fail whoever still waits there."""
        old_loop, old_queue = self._loop, self.queue
        self.queue = asyncio.Queue()
        if old_loop.is_closed():
            self._workers = []
            return
        for t in self._workers:
            old_loop.call_soon_threadsafe(t.cancel)
        self._workers = []
        stale = 0
        while not old_queue.empty():
            task, fut = old_queue.get_nowait()
            task.status = "failed"
            old_loop.call_soon_threadsafe(_fail, fut, "scheduler restarted")
            old_queue.task_done()
            stale += 1
        log.warning("[SCHEDULER RESTART] new event loop, failed %d waiting task(s)", stale)

    async def submit(self, task: GenerationTask) -> GenerationResult:
        """Queue ``task`` and wait until it has run."""
        self.start()
        fut: asyncio.Future = asyncio.get_running_loop().create_future()
        await self.queue.put((task, fut))
        log.debug("[TASK QUEUED] task_id=%s label=%s queued=%d", task.task_id, task.label, self.queue.qsize())
        return await fut

    async def _worker_loop(self, idx: int) -> None:
        queue = self.queue
        while True:
            task, fut = await queue.get()
            try:
                result = await self._execute(task)
                # the submitter may have gone away; the task still ran to the end
                if not fut.done():
                    fut.set_result(result)
            except asyncio.CancelledError:
                task.status = "failed"
                if not fut.done():
                    fut.set_result(GenerationResult.failure("scheduler shut down"))
                raise
            finally:
                queue.task_done()

    async def _execute(self, task: GenerationTask) -> GenerationResult:
        task.status = "running"
        self._running += 1
        self._peak_running = max(self._peak_running, self._running)
        try:
            result = await task.run()
        except Exception as e:
            diagnostic = getattr(e, "diagnostic", None)
            log.error("[TASK FAILED] task_id=%s label=%s error=%s", task.task_id, task.label, e)
            if diagnostic:
                log.error("[TASK DIAGNOSTIC] task_id=%s %s", task.task_id, diagnostic)
            result = GenerationResult.failure(str(e) or e.__class__.__name__)
        finally:
            self._running -= 1

        if result.ok:
            task.status = "succeeded"
            self._completed += 1
        else:
            task.status = "failed"
            self._failed += 1
        return result

    def stats(self) -> SchedulerStats:
        return SchedulerStats(
            limit=self.limit,
            queued=self.queue.qsize(),
            running=self._running,
            peak_running=self._peak_running,
            completed=self._completed,
            failed=self._failed,
        )

    async def shutdown(self) -> None:
        for t in self._workers:
            t.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        # waiting submitters get a failure instead of hanging forever
        while not self.queue.empty():
            task, fut = self.queue.get_nowait()
            task.status = "failed"
            _fail(fut, "scheduler shut down")
            self.queue.task_done()
        log.info("[SCHEDULER STOP]")


def _fail(fut: asyncio.Future, reason: str) -> None:
    if not fut.done():
        fut.set_result(GenerationResult.failure(reason))
