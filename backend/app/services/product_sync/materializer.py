"""AttachmentMaterializer: background prefetch of URL-backed attachments.

After a sync, every attachment still carrying a ``URL:`` hash is
downloaded once through AttachmentStore.download so later user downloads
are served from local storage. Runs outside the request, one item per
coroutine, each with its own timeout. Failures are logged per item and
never propagate.
"""
import asyncio
import logging
from dataclasses import dataclass

from services.product_sync.attachments import AttachmentStore

logger = logging.getLogger("prodhub.sync.materializer")


@dataclass
class MaterializeReport:
    total: int = 0
    succeeded: int = 0
    failed: int = 0


class AttachmentMaterializer:

    def __init__(
        self,
        store: AttachmentStore,
        *,
        timeout: float = 600.0,
        concurrency: int = 0,
    ):
        self.store = store
        self.timeout = timeout
        self._semaphore = asyncio.Semaphore(concurrency) if concurrency > 0 else None
        self._tasks: set[asyncio.Task] = set()
        self.last_report: MaterializeReport | None = None

    @property
    def pending(self) -> int:
        return sum(1 for t in self._tasks if not t.done())

    def schedule(self) -> asyncio.Task:
        """Start a materialization pass in the background."""
        task = asyncio.create_task(self._supervise(), name="attachment_materialize")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def wait_idle(self) -> None:
        """Wait for every scheduled pass to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def stop(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        for task in list(self._tasks):
            try:
                await task
            except asyncio.CancelledError:
                pass
        logger.info("AttachmentMaterializer stopped")

    async def _supervise(self) -> MaterializeReport | None:
        try:
            return await self.run_pass()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("Materialization pass failed: %s", exc, exc_info=True)
            return None

    async def run_pass(self) -> MaterializeReport:
        """Materialize every URL-backed attachment concurrently."""
        attachments = await self.store.list_url_backed()
        report = MaterializeReport(total=len(attachments))
        if attachments:
            logger.info("Materializing %d URL-backed attachments", len(attachments))
        results = await asyncio.gather(
            *(self._materialize_one(a.id, a.hash) for a in attachments)
        )
        report.succeeded = sum(1 for ok in results if ok)
        report.failed = report.total - report.succeeded
        self.last_report = report
        if report.total:
            logger.info(
                "Materialization done: %d ok, %d failed", report.succeeded, report.failed,
            )
        return report

    async def _materialize_one(self, attachment_id: int, hash_value: str) -> bool:
        try:
            if self._semaphore is not None:
                async with self._semaphore:
                    await asyncio.wait_for(self.store.download(hash_value), self.timeout)
            else:
                await asyncio.wait_for(self.store.download(hash_value), self.timeout)
        except asyncio.CancelledError:
            raise
        except asyncio.TimeoutError:
            logger.error(
                "Background load of attachment %d timed out after %.0fs",
                attachment_id, self.timeout,
            )
            return False
        except Exception as exc:
            logger.error("Failed to background load attachment %d: %s", attachment_id, exc)
            return False
        logger.info("Background loaded attachment %d", attachment_id)
        return True
