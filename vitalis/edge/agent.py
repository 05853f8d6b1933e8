"""
Vitalis Agent - Main Daemon.

Wires the collector registry, scheduler, sender and local buffer
together. Drains leftover batches at startup, drains periodically while
running, and flushes the last batch on shutdown.
"""

import asyncio
import contextlib
import logging
import signal
import sys
from typing import Optional

from .buffer import AsyncBatchBuffer
from .collectors import Registry, default_collectors
from .config import AgentConfig
from .scheduler import Scheduler, wait_for_stop
from .sender import Sender

logger = logging.getLogger(__name__)


class Agent:
    """
    Main agent daemon.

    Collection, flushing and draining all run on one event loop.
    """

    def __init__(
        self,
        config: Optional[AgentConfig] = None,
        registry: Optional[Registry] = None,
        transport=None,
    ):
        """Initialize the agent."""
        self.config = config or AgentConfig.load()

        # Initialize buffer
        buffer_cfg = self.config.buffer
        self.buffer = AsyncBatchBuffer(
            path=buffer_cfg.path,
            max_size_mb=buffer_cfg.max_size_mb,
            max_batches=buffer_cfg.max_batches,
            overflow=buffer_cfg.overflow,
        ) if buffer_cfg.enabled else None

        # Initialize sender
        server = self.config.server
        self.sender = Sender(
            server_url=server.url,
            machine_token=server.machine_token,
            buffer=self.buffer,
            max_retries=server.max_retries,
            base_delay=server.retry_delay,
            timeout=server.timeout,
            transport=transport,
        )

        # Initialize collectors
        if registry is None:
            registry = Registry()
            for collector in default_collectors(self.config.collection.top_processes):
                registry.register(collector)
        self.registry = registry

        # Initialize scheduler with the sender as the batch-ready hook
        collection = self.config.collection
        self.scheduler = Scheduler(
            registry=self.registry,
            collect_interval=collection.interval,
            batch_interval=collection.batch_interval,
            collect_timeout=collection.collect_timeout,
        )
        self.scheduler.on_batch_ready(self.sender.send)

    async def run(self, stop: Optional[asyncio.Event] = None):
        """Run until ``stop`` is set or SIGINT/SIGTERM arrives."""
        stop = stop or asyncio.Event()
        self._install_signal_handlers(stop)

        logger.info(f"Starting Vitalis agent, server: {self.config.server.url}")

        drainer = None
        try:
            # Deliver anything left over from previous runs
            sent = await self.sender.flush_buffer()
            if sent:
                logger.info(f"Delivered {sent} buffered batches from previous runs")

            if self.buffer is not None and self.config.buffer.drain_interval > 0:
                drainer = asyncio.create_task(self._buffer_drainer(stop))

            await self.scheduler.start(stop)
        finally:
            if drainer is not None:
                drainer.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await drainer
            self._remove_signal_handlers()
            await self.close()

        logger.info("Vitalis agent stopped")

    async def _buffer_drainer(self, stop: asyncio.Event):
        """Periodically try to deliver buffered batches."""
        interval = self.config.buffer.drain_interval

        while not await wait_for_stop(stop, interval):
            try:
                if await self.buffer.count() > 0:
                    sent = await self.sender.flush_buffer()
                    if sent > 0:
                        logger.info(f"Flushed {sent} buffered batches")
            except Exception as e:
                logger.error(f"Buffer drainer error: {e}")

    def _install_signal_handlers(self, stop: asyncio.Event):
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, stop.set)
            except (NotImplementedError, RuntimeError):
                # Windows event loops and non-main threads
                logger.debug(f"Signal handler for {sig.name} not installed")

    def _remove_signal_handlers(self):
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            with contextlib.suppress(NotImplementedError, RuntimeError):
                loop.remove_signal_handler(sig)

    async def close(self):
        """Close connections."""
        await self.sender.close()
        if self.buffer:
            self.buffer.close()


def run_agent(config: Optional[AgentConfig] = None):
    """Run the agent until interrupted."""
    agent = Agent(config)

    try:
        asyncio.run(agent.run())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    config_path = sys.argv[1] if len(sys.argv) > 1 else None
    run_agent(AgentConfig.load(config_path))
