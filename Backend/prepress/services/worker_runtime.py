"""
Worker runtime: the poller and the cleanup sweeper.

Workers coordinate only through the job table (the atomic claim), so any
number of processes can run a WorkerRuntime side by side. Each process owns
exactly one runtime; nothing here is module-level state.
"""
import abc
import asyncio
import logging
from datetime import timedelta
from typing import Optional

from prepress.core.config import Settings, settings as default_settings
from prepress.services.adapters import LocalOutputAdapter, OutputAdapter, build_adapters
from prepress.services.cleanup import cleanup_expired_jobs
from prepress.services.findings import FindingsStore
from prepress.services.job_store import JobStore
from prepress.services.pipeline import PreflightPipeline
from prepress.services.processor import JobProcessor
from prepress.services.toolchain import SubprocessToolRunner, ToolRunner

logger = logging.getLogger(__name__)


class _PeriodicLoop(abc.ABC):
    """Runs `tick()` at start and then every interval until stopped. start/stop are idempotent."""

    name = "loop"

    def __init__(self, interval_ms: int):
        self.interval = interval_ms / 1000
        self._task: Optional[asyncio.Task] = None
        self._wake: Optional[asyncio.Event] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self):
        if self.running:
            return
        self._wake = asyncio.Event()
        self._task = asyncio.create_task(self._loop())
        logger.info(f"{self.name} started (interval {self.interval:g}s)")

    async def stop(self):
        """Let the current tick finish, then exit the loop."""
        if not self.running:
            return
        self._wake.set()
        await self._task
        self._task = None
        logger.info(f"{self.name} stopped")

    @abc.abstractmethod
    async def tick(self):
        """One unit of work; exceptions are logged and the loop goes on."""

    async def _loop(self):
        while not self._wake.is_set():
            try:
                await self.tick()
            except Exception as e:
                logger.error(f"{self.name} tick failed: {e}")
            await self._sleep()

    async def _sleep(self):
        try:
            await asyncio.wait_for(self._wake.wait(), timeout=self.interval)
        except asyncio.TimeoutError:
            pass


class Poller(_PeriodicLoop):
    """Each tick runs up to `concurrency` claim+process operations at once."""

    name = "Poller"

    def __init__(self, processor: JobProcessor, interval_ms: int = 10_000, concurrency: int = 1):
        super().__init__(interval_ms)
        self.processor = processor
        self.concurrency = max(1, concurrency)

    async def tick(self) -> int:
        results = await asyncio.gather(
            *(self.processor.process_one_job() for _ in range(self.concurrency)),
            return_exceptions=True,
        )
        processed = 0
        for result in results:
            if isinstance(result, BaseException):
                logger.error(f"Poller: job processing raised {result!r}")
            elif result:
                processed += 1
        if processed:
            logger.info(f"Poller: processed {processed} job(s)")
        return processed


class CleanupSweeper(_PeriodicLoop):
    """Deletes expired jobs. Runs once at start, then every interval."""

    name = "Cleanup sweeper"

    def __init__(self, store: JobStore, interval_ms: int = 30 * 60 * 1000, batch_size: int = 100,
                 running_grace_minutes: int = 60, output_adapter: Optional[OutputAdapter] = None):
        super().__init__(interval_ms)
        self.store = store
        self.output_adapter = output_adapter or LocalOutputAdapter()
        self.batch_size = batch_size
        self.running_grace_minutes = running_grace_minutes

    async def tick(self) -> int:
        return await cleanup_expired_jobs(
            self.store,
            self.output_adapter,
            limit=self.batch_size,
            running_grace=timedelta(minutes=self.running_grace_minutes),
        )


class WorkerRuntime:
    """Owns the processor, poller and sweeper of one process."""

    def __init__(self, processor: JobProcessor, store: JobStore, config: Settings = default_settings):
        self.processor = processor
        self.poller = Poller(processor, config.POLL_INTERVAL_MS, config.WORKER_CONCURRENCY)
        self.sweeper = CleanupSweeper(
            store,
            config.CLEANUP_INTERVAL_MS,
            config.CLEANUP_BATCH_SIZE,
            config.RUNNING_SWEEP_GRACE_MINUTES,
            processor.pipeline.output_adapter,
        )

    @classmethod
    def from_settings(cls, config: Settings = default_settings, runner: Optional[ToolRunner] = None) -> "WorkerRuntime":
        """Wire the production graph: adapters, subprocess tools, stores."""
        input_adapter, output_adapter = build_adapters(config)
        runner = runner or SubprocessToolRunner(
            config.TOOL_TIMEOUT_MS, config.TOOL_VERSION_TIMEOUT_MS, config.TOOL_MAX_OUTPUT_BYTES
        )
        store = JobStore()
        pipeline = PreflightPipeline(runner, input_adapter, output_adapter, FindingsStore())
        return cls(JobProcessor(store, pipeline), store, config)

    @property
    def running(self) -> bool:
        return self.poller.running or self.sweeper.running

    def start(self):
        self.poller.start()
        self.sweeper.start()

    async def stop(self):
        await self.poller.stop()
        await self.sweeper.stop()
