#!/usr/bin/env python3
"""
Primary-instance check for jobs that must run on exactly one host.

Auto Scaling group membership can change while the process runs, so jobs ask
at fire time instead of the scheduler deciding once at startup.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Any, Optional

import boto3


logger = logging.getLogger("caretaker.chores.membership")

TRUE_VALUES = {"1", "true", "yes", "on"}
FALSE_VALUES = {"0", "false", "no", "off"}


def _non_empty(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    text = value.strip()
    return text if text else None


@dataclass
class MembershipContext:
    primary_override: Optional[str]
    instance_id: Optional[str]
    group_name: Optional[str]
    region: Optional[str]

    @staticmethod
    def from_env() -> "MembershipContext":
        return MembershipContext(
            primary_override=_non_empty(os.getenv("CARETAKER_PRIMARY")),
            instance_id=_non_empty(os.getenv("CARETAKER_INSTANCE_ID")),
            group_name=_non_empty(os.getenv("CARETAKER_ASG_NAME")),
            region=_non_empty(os.getenv("AWS_REGION")),
        )


def is_primary(client: Any = None, context: Optional[MembershipContext] = None) -> bool:
    """True when this instance has the lowest in-service instance id in its group."""
    ctx = context or MembershipContext.from_env()

    if ctx.primary_override is not None:
        value = ctx.primary_override.lower()
        if value in TRUE_VALUES:
            return True
        if value in FALSE_VALUES:
            return False
        logger.warning("Ignoring unrecognized CARETAKER_PRIMARY=%r", ctx.primary_override)

    if not ctx.instance_id or not ctx.group_name:
        # Not part of an Auto Scaling group; a single instance is always primary.
        return True

    if client is None:
        client = boto3.client("autoscaling", region_name=ctx.region)
    response = client.describe_auto_scaling_groups(AutoScalingGroupNames=[ctx.group_name])
    groups = response.get("AutoScalingGroups", [])
    if not groups:
        logger.warning("Auto Scaling group %s not found; assuming not primary.", ctx.group_name)
        return False

    in_service = sorted(
        instance["InstanceId"]
        for instance in groups[0].get("Instances", [])
        if instance.get("LifecycleState") == "InService"
    )
    primary = bool(in_service) and in_service[0] == ctx.instance_id
    logger.info(
        "Membership check for %s in %s: primary=%s (in_service=%s)",
        ctx.instance_id,
        ctx.group_name,
        primary,
        len(in_service),
    )
    return primary
