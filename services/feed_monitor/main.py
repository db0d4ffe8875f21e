"""
Feed monitor service.

Wires the feed monitor to the commit processor:
- Commit-detected events are enqueued for tracing
- Processed chains are logged for downstream collaborators
- Runs until SIGINT/SIGTERM
"""

import asyncio
import logging
import signal
from typing import List, Optional

from config.projects import MonitorConfigLoader
from config.settings import settings
from shared.events import CommitDetectedEvent, CommitProcessedEvent, EventType, PollErrorEvent
from shared.gitlab_client import GitLabClient
from services.commit_tracer.tracer import CommitTracer, TracingOptions
from services.feed_monitor.monitor import FeedMonitor
from services.feed_monitor.processor import CommitProcessor


logger = logging.getLogger(__name__)


class MonitorService:
    """Feed monitor plus commit processor with their event wiring."""

    def __init__(
        self,
        client: Optional[GitLabClient] = None,
        config_loader: Optional[MonitorConfigLoader] = None,
        tracer: Optional[CommitTracer] = None,
    ):
        self.client = client or GitLabClient.from_settings()
        self.config_loader = config_loader or MonitorConfigLoader()
        self.tracer = tracer or CommitTracer(self.client, TracingOptions.from_settings())
        self.monitor = FeedMonitor(self.client, self.config_loader)
        self.processor = CommitProcessor(self.tracer)
        self._listeners: List[asyncio.Task] = []
        self._stop_requested: Optional[asyncio.Event] = None

    def connect(self):
        """Start the listener tasks that route events between components."""
        if self._listeners:
            return
        self._listeners.append(self.monitor.events.listen(
            self._on_monitor_event, {EventType.COMMIT_DETECTED, EventType.POLL_ERROR}
        ))
        self._listeners.append(self.processor.events.listen(
            self._on_processed, {EventType.COMMIT_PROCESSED}
        ))

    async def _on_monitor_event(self, event):
        if isinstance(event, CommitDetectedEvent):
            self.processor.enqueue(event.commit)
        elif isinstance(event, PollErrorEvent):
            logger.warning(
                f"Poll error for {event.project_id}:{event.branch} "
                f"({event.consecutive_failures} consecutive): {event.error}"
            )

    async def _on_processed(self, event: CommitProcessedEvent):
        sha = event.commit.sha[:8]
        if event.success and event.chain is not None:
            chain = event.chain
            logger.info(
                f"Chain ready for {sha}: {chain.summary()} "
                f"(complete={chain.metadata.is_complete}, warnings={len(chain.metadata.warnings)})"
            )
        else:
            logger.error(f"Commit {sha} could not be traced: {event.error}")

    async def start(self):
        self.connect()
        await self.monitor.start()

    async def stop(self):
        await self.monitor.stop()
        await self.processor.close()
        self.monitor.events.close()
        self.processor.events.close()
        if self._listeners:
            await asyncio.gather(*self._listeners, return_exceptions=True)
            self._listeners = []
        await self.client.close()

    def request_stop(self):
        if self._stop_requested is not None:
            self._stop_requested.set()

    async def run_forever(self):
        """Run until a termination signal arrives."""
        self._stop_requested = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_stop)
            except NotImplementedError:
                # Windows event loops have no signal handler support
                signal.signal(sig, lambda *_: loop.call_soon_threadsafe(self.request_stop))

        await self.start()
        logger.info(f"{settings.app_name} monitor running, press Ctrl+C to stop")
        try:
            await self._stop_requested.wait()
        finally:
            await self.stop()
            logger.info("Monitor service stopped")


async def main():
    service = MonitorService()
    await service.run_forever()
