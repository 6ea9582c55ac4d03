"""
Host resource detection used to size the embedding worker pool.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Optional

import psutil

from ..config import settings

logger = logging.getLogger("codeindex.resources")

GB = 1024 ** 3

# Approximate resident memory per concurrent embedding call
MEMORY_PER_WORKER_GB = 0.5
HIGH_MEMORY_PER_WORKER_GB = 3.0


@dataclass
class SystemResources:
    total_memory_gb: float
    free_memory_gb: float
    cpu_count: int
    available_memory_gb: float


def detect_system_resources(memory_reserve_gb: Optional[float] = None) -> SystemResources:
    """
    Snapshot CPU and memory. `available_memory_gb` is free memory minus the
    reserve kept for other processes, floored at zero.
    """
    reserve = settings.memory_reserve_gb if memory_reserve_gb is None else memory_reserve_gb
    memory = psutil.virtual_memory()
    total_gb = memory.total / GB
    free_gb = memory.available / GB
    cpu_count = psutil.cpu_count(logical=True) or os.cpu_count() or 1

    return SystemResources(
        total_memory_gb=total_gb,
        free_memory_gb=free_gb,
        cpu_count=cpu_count,
        available_memory_gb=max(0.0, free_gb - reserve),
    )


def calculate_optimal_worker_count(
    high_memory_model: bool = False,
    max_workers: Optional[int] = None,
    memory_reserve_gb: Optional[float] = None,
) -> int:
    """
    Number of concurrent embedding calls the host can sustain.

    Starts from one less than the CPU count (capped at `max_workers`), then
    lowers it so every worker fits in the available memory. Never below 1.
    """
    if max_workers is None:
        max_workers = settings.max_embedding_workers

    resources = detect_system_resources(memory_reserve_gb)

    worker_count = max(1, min(resources.cpu_count - 1, max_workers))

    per_worker = HIGH_MEMORY_PER_WORKER_GB if high_memory_model else MEMORY_PER_WORKER_GB
    workers_for_memory = max(1, int(resources.available_memory_gb // per_worker))
    worker_count = min(worker_count, workers_for_memory)

    logger.info(
        "Worker calculation: cpus=%d, total_memory_gb=%.2f, available_memory_gb=%.2f, "
        "high_memory_model=%s, worker_count=%d",
        resources.cpu_count,
        resources.total_memory_gb,
        resources.available_memory_gb,
        high_memory_model,
        worker_count,
    )
    return worker_count
