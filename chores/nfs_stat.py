#!/usr/bin/env python3
"""
Logs NFS client statistics. Kept apart from system_data since the output is verbose.
"""

from __future__ import annotations

import logging
import subprocess


logger = logging.getLogger("caretaker.chores.nfs_stat")

NFSSTAT_COMMAND = ["nfsstat", "-c"]
DEFAULT_TIMEOUT_SECONDS = 60


def sample(timeout: int = DEFAULT_TIMEOUT_SECONDS) -> "subprocess.CompletedProcess[str]":
    result = subprocess.run(
        NFSSTAT_COMMAND,
        capture_output=True,
        text=True,
        timeout=timeout,
        check=False,
    )
    logger.info("nfsstat: %s", result.stdout.strip())
    return result
