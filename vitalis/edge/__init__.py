"""
Vitalis Edge Agent - Lightweight host telemetry agent.

Collects system metrics on a timer, batches them, and delivers the
batches to the ingestion API, buffering locally through outages.
"""

from .agent import Agent
from .config import AgentConfig
from .buffer import AsyncBatchBuffer, BatchBuffer
from .models import BatchState, Snapshot
from .scheduler import Scheduler
from .sender import Sender

__all__ = [
    "Agent",
    "AgentConfig",
    "AsyncBatchBuffer",
    "BatchBuffer",
    "BatchState",
    "Snapshot",
    "Scheduler",
    "Sender",
]
