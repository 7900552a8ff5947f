#!/usr/bin/env python3
"""
Logs host memory, process and open file counts to help debug resource issues.
"""

from __future__ import annotations

import logging
from typing import Dict

import psutil


logger = logging.getLogger("caretaker.chores.system_data")

MB = 1048576


def count_open_files() -> int:
    total = 0
    for proc in psutil.process_iter():
        try:
            total += proc.num_fds()
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
            continue
    return total


def collect() -> Dict[str, str]:
    memory = psutil.virtual_memory()
    own = psutil.Process().memory_info()
    return {
        "freeMemory": f"{round(memory.available / MB)}MB",
        "processRss": f"{round(own.rss / MB)}MB",
        "processVms": f"{round(own.vms / MB)}MB",
        "processes": str(len(psutil.pids())),
        "openFiles": str(count_open_files()),
    }


def sample() -> Dict[str, str]:
    data = collect()
    logger.info("System data: %s", data)
    return data
