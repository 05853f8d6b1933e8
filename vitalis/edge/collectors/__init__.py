"""
Vitalis Agent Collectors.

Each collector gathers one kind of metric from the host system.
"""

from .base import (
    Collector,
    CollectorOutcome,
    CollectorResult,
    CollectionTimeout,
    Registry,
)
from .system import default_collectors

__all__ = [
    "Collector",
    "CollectorOutcome",
    "CollectorResult",
    "CollectionTimeout",
    "Registry",
    "default_collectors",
]
