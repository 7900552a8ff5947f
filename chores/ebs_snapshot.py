#!/usr/bin/env python3
"""
Creates EBS snapshots of the NAS volumes.
"""

from __future__ import annotations

import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from caretaker import ConfigError, JobExecutionError


logger = logging.getLogger("caretaker.chores.ebs_snapshot")

DEFAULT_VOLUMES = {
    "softnas-primary": "vol-dee96908",
    "softnas-secondary": "vol-275e1dfb",
}


def parse_volumes(raw: Optional[str]) -> Dict[str, str]:
    """Parse ``label=vol-id`` pairs separated by commas."""
    if raw is None or not raw.strip():
        return dict(DEFAULT_VOLUMES)
    volumes: Dict[str, str] = {}
    for item in raw.split(","):
        item = item.strip()
        if not item:
            continue
        label, sep, volume_id = item.partition("=")
        if not sep or not label.strip() or not volume_id.strip():
            raise ConfigError(f'Error: CARETAKER_EBS_VOLUMES entry must be label=vol-id, got "{item}".')
        volumes[label.strip()] = volume_id.strip()
    return volumes


def create_snapshots(
    client: Any = None,
    volumes: Optional[Dict[str, str]] = None,
    now: Optional[datetime] = None,
) -> List[str]:
    targets = volumes if volumes is not None else parse_volumes(os.getenv("CARETAKER_EBS_VOLUMES"))
    if client is None:
        client = boto3.client("ec2", region_name=os.getenv("AWS_REGION"))
    stamp = (now or datetime.now(tz=timezone.utc)).isoformat()

    snapshot_ids: List[str] = []
    failures: List[str] = []
    # Every volume is attempted even when an earlier one fails.
    for label, volume_id in targets.items():
        try:
            response = client.create_snapshot(
                DryRun=False,
                VolumeId=volume_id,
                Description=f"{label}-{stamp}",
            )
        except (BotoCoreError, ClientError) as exc:
            logger.error("Error creating EBS snapshot for %s (%s): %s", label, volume_id, exc)
            failures.append(f"{label}: {exc}")
            continue
        snapshot_id = response.get("SnapshotId", "")
        snapshot_ids.append(snapshot_id)
        logger.info("EBS snapshot %s started for %s (%s)", snapshot_id, label, volume_id)

    if failures:
        raise JobExecutionError(f"{len(failures)} of {len(targets)} snapshot(s) failed: " + "; ".join(failures))
    return snapshot_ids
