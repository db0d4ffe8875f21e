"""
Commit processing queue.

Detected commits are queued once, traced with bounded concurrency and
retried with a fixed delay until they complete or exhaust their retries.
Every transition is published on the processor's event channel.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional

from config.settings import settings
from shared.events import (
    BaseEvent, CommitProcessedEvent, CommitProcessingEvent, CommitQueuedEvent,
    EventChannel, EventMetadata, EventSource, QueueEmptyEvent,
)
from shared.models import DetectedCommit, ProcessingStatus, ProcessorStats, QueuedCommit
from services.commit_tracer.tracer import CommitTracer


logger = logging.getLogger(__name__)


class CommitProcessor:
    """
    Bounded-concurrency tracing queue.

    Usage:
        processor = CommitProcessor(tracer, concurrency=3)
        processed = processor.events.subscribe()
        processor.enqueue(detected_commit)
        await processor.wait_idle()
    """

    def __init__(
        self,
        tracer: CommitTracer,
        concurrency: Optional[int] = None,
        max_retries: Optional[int] = None,
        retry_delay: Optional[float] = None,
        events: Optional[EventChannel[BaseEvent]] = None,
    ):
        self.tracer = tracer
        self.concurrency = concurrency if concurrency is not None else settings.processor.concurrency
        self.max_retries = max_retries if max_retries is not None else settings.processor.max_retries
        self.retry_delay = retry_delay if retry_delay is not None else settings.processor.retry_delay
        if self.concurrency < 1:
            raise ValueError(f"Concurrency must be at least 1, got {self.concurrency}")
        self.events: EventChannel[BaseEvent] = events or EventChannel("commit_processor")

        self._queue: List[QueuedCommit] = []
        self._active: Dict[str, asyncio.Task] = {}
        self._processed: Dict[str, QueuedCommit] = {}
        self._wakeup: Optional[asyncio.TimerHandle] = None
        self._idle = asyncio.Event()
        self._idle.set()
        self._closed = False

    def _publish(self, event: BaseEvent):
        self.events.publish(event)

    @staticmethod
    def _meta() -> EventMetadata:
        return EventMetadata(source=EventSource.COMMIT_PROCESSOR)

    # Intake

    def enqueue(self, commit: DetectedCommit) -> bool:
        """Queue a commit for tracing. Returns False for duplicates or once the processor is closed."""
        if self._closed:
            logger.warning(f"Processor is closed, not queueing commit {commit.sha[:8]}")
            return False
        if commit.sha in self._processed:
            logger.debug(f"Commit {commit.sha[:8]} already processed, skipping")
            return False
        if any(item.sha == commit.sha for item in self._queue):
            logger.debug(f"Commit {commit.sha[:8]} already in queue, skipping")
            return False

        item = QueuedCommit(commit=commit)
        self._queue.append(item)
        self._idle.clear()
        logger.info(f"Queued commit {commit.sha[:8]} - {commit.title[:50]}")
        self._publish(CommitQueuedEvent(metadata=self._meta(), commit=item.model_copy(deep=True)))

        self._process_next()
        return True

    def retry(self, sha: str):
        """Re-queue a commit that ended in ``failed`` status."""
        if self._closed:
            raise RuntimeError("Processor is closed")
        item = self._processed.get(sha)
        if item is None:
            raise KeyError(f"Commit not found: {sha}")
        if item.status != ProcessingStatus.FAILED:
            raise ValueError(f"Commit {sha[:8]} is not in failed state")

        logger.info(f"Retrying failed commit {sha[:8]}")
        del self._processed[sha]
        item.status = ProcessingStatus.PENDING
        item.retries = 0
        item.error = None
        item.processing_started_at = None
        item.processing_completed_at = None
        item.not_before = None
        self._queue.append(item)
        self._idle.clear()
        self._process_next()

    # Scheduling

    def _process_next(self):
        if self._closed:
            return

        loop = asyncio.get_running_loop()
        now = loop.time()
        while len(self._active) < self.concurrency:
            item = next(
                (
                    q for q in self._queue
                    if q.status == ProcessingStatus.PENDING
                    and q.sha not in self._active
                    and (q.not_before is None or q.not_before <= now)
                ),
                None,
            )
            if item is None:
                break
            self._start(item)

        self._schedule_wakeup(loop, now)
        self._check_idle()

    def _schedule_wakeup(self, loop: asyncio.AbstractEventLoop, now: float):
        if self._wakeup is not None:
            self._wakeup.cancel()
            self._wakeup = None

        deferred = [
            q.not_before for q in self._queue
            if q.status == ProcessingStatus.PENDING and q.not_before is not None and q.not_before > now
        ]
        if deferred and len(self._active) < self.concurrency:
            self._wakeup = loop.call_later(min(deferred) - now, self._on_wakeup)

    def _on_wakeup(self):
        self._wakeup = None
        self._process_next()

    def _check_idle(self):
        if self._queue or self._active:
            return
        if not self._idle.is_set():
            self._idle.set()
            logger.info("Commit queue is empty")
            self._publish(QueueEmptyEvent(metadata=self._meta()))

    def _start(self, item: QueuedCommit):
        item.status = ProcessingStatus.PROCESSING
        item.processing_started_at = datetime.now(timezone.utc)
        logger.info(
            f"Processing commit {item.sha[:8]} ({len(self._active) + 1}/{self.concurrency} slots)"
        )
        self._publish(CommitProcessingEvent(metadata=self._meta(), commit=item.model_copy(deep=True)))

        task = asyncio.create_task(self._process(item), name=f"trace-{item.sha[:8]}")
        self._active[item.sha] = task
        task.add_done_callback(lambda _t, sha=item.sha: self._on_done(sha))

    def _on_done(self, sha: str):
        self._active.pop(sha, None)
        self._process_next()

    async def _process(self, item: QueuedCommit):
        try:
            chain = await self.tracer.trace_commit(item.sha, item.commit.project_id)
        except Exception as e:
            item.retries += 1
            item.error = str(e)
            if item.retries < self.max_retries:
                logger.warning(
                    f"Trace of {item.sha[:8]} failed, retrying in {self.retry_delay}s "
                    f"(attempt {item.retries + 1}/{self.max_retries}): {e}"
                )
                item.status = ProcessingStatus.PENDING
                item.not_before = asyncio.get_running_loop().time() + self.retry_delay
                return

            logger.error(f"Commit {item.sha[:8]} failed after {item.retries} attempts: {e}")
            item.status = ProcessingStatus.FAILED
            item.processing_completed_at = datetime.now(timezone.utc)
            self._move_to_processed(item)
            self._publish(CommitProcessedEvent(
                metadata=self._meta(),
                commit=item.model_copy(deep=True),
                success=False,
                error=item.error,
            ))
            return

        item.status = ProcessingStatus.COMPLETED
        item.error = None
        item.processing_completed_at = datetime.now(timezone.utc)
        self._move_to_processed(item)
        logger.info(f"Traced commit {item.sha[:8]}: {chain.summary()}")
        self._publish(CommitProcessedEvent(
            metadata=self._meta(),
            commit=item.model_copy(deep=True),
            success=True,
            chain=chain,
        ))

    def _move_to_processed(self, item: QueuedCommit):
        self._queue = [q for q in self._queue if q.sha != item.sha]
        self._processed[item.sha] = item

    # Queries

    def get_queue(self) -> List[QueuedCommit]:
        return [item.model_copy(deep=True) for item in self._queue]

    def get_processed(self) -> List[QueuedCommit]:
        return [item.model_copy(deep=True) for item in self._processed.values()]

    def get_processed_commit(self, sha: str) -> Optional[QueuedCommit]:
        item = self._processed.get(sha)
        return item.model_copy(deep=True) if item else None

    def get_stats(self) -> ProcessorStats:
        processed = list(self._processed.values())
        return ProcessorStats(
            queue_size=len(self._queue),
            pending=sum(1 for q in self._queue if q.status == ProcessingStatus.PENDING),
            processing=sum(1 for q in self._queue if q.status == ProcessingStatus.PROCESSING),
            active_slots=len(self._active),
            max_concurrency=self.concurrency,
            total_processed=len(processed),
            completed=sum(1 for q in processed if q.status == ProcessingStatus.COMPLETED),
            failed=sum(1 for q in processed if q.status == ProcessingStatus.FAILED),
        )

    # Maintenance

    def clear_processed(self):
        self._processed.clear()
        logger.info("Cleared processed commits history")

    def clear_queue(self) -> int:
        """Drop pending commits; commits being traced are left to finish."""
        pending = [q for q in self._queue if q.status == ProcessingStatus.PENDING]
        self._queue = [q for q in self._queue if q.status != ProcessingStatus.PENDING]
        logger.info(f"Cleared queue ({len(pending)} pending commits cancelled)")
        if not self._closed:
            self._process_next()
        return len(pending)

    async def wait_idle(self):
        """Wait until nothing is pending or being traced."""
        await self._idle.wait()

    async def close(self):
        """Stop scheduling work and wait for in-flight traces to finish."""
        self._closed = True
        if self._wakeup is not None:
            self._wakeup.cancel()
            self._wakeup = None
        if self._active:
            await asyncio.gather(*self._active.values(), return_exceptions=True)
        # Pending items never run after close.
        self._idle.set()
