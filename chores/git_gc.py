#!/usr/bin/env python3
"""
Runs ``git gc`` over every repository under the configured root.

Only the primary instance collects garbage; the check happens at fire time.
"""

from __future__ import annotations

import logging
import os
import subprocess
from pathlib import Path
from typing import List, Optional

from caretaker import ConfigError, JobExecutionError

from .membership import is_primary


logger = logging.getLogger("caretaker.chores.git_gc")

DEFAULT_TIMEOUT_SECONDS = 3600


def find_repositories(root: Path) -> List[Path]:
    repos: List[Path] = []
    for candidate in sorted(root.iterdir()):
        if not candidate.is_dir():
            continue
        if (candidate / ".git").exists() or ((candidate / "HEAD").is_file() and (candidate / "objects").is_dir()):
            repos.append(candidate)
    return repos


def run(root: Optional[Path] = None, timeout: int = DEFAULT_TIMEOUT_SECONDS) -> int:
    if not is_primary():
        logger.info("Not the primary instance; skipping git gc.")
        return 0

    if root is None:
        raw = os.getenv("CARETAKER_GIT_ROOT")
        if not raw:
            raise ConfigError("Error: CARETAKER_GIT_ROOT is not set.")
        root = Path(raw)
    if not root.is_dir():
        raise ConfigError(f"Error: git root does not exist: {root}")

    repos = find_repositories(root)
    logger.info("Running git gc on %s repositories under %s", len(repos), root)
    failed: List[str] = []
    for repo in repos:
        try:
            result = subprocess.run(
                ["git", "-C", str(repo), "gc", "--quiet"],
                capture_output=True,
                text=True,
                timeout=timeout,
                check=False,
            )
        except subprocess.TimeoutExpired:
            logger.error("git gc timed out after %ss for %s", timeout, repo)
            failed.append(repo.name)
            continue
        if result.returncode != 0:
            logger.error("git gc failed for %s (code=%s): %s", repo, result.returncode, result.stderr.strip())
            failed.append(repo.name)

    if failed:
        raise JobExecutionError(f"git gc failed for {len(failed)} repositories: {', '.join(failed)}")
    return 0
