from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Literal

from .models import RequireApproval, StackArtifact

logger = logging.getLogger(__name__)

# Resource types whose changes alter who may access what.
SECURITY_SENSITIVE_TYPES = frozenset(
    {
        "AWS::EC2::SecurityGroup",
        "AWS::EC2::SecurityGroupEgress",
        "AWS::EC2::SecurityGroupIngress",
        "AWS::IAM::Group",
        "AWS::IAM::InstanceProfile",
        "AWS::IAM::ManagedPolicy",
        "AWS::IAM::Policy",
        "AWS::IAM::Role",
        "AWS::IAM::User",
        "AWS::KMS::Key",
        "AWS::Lambda::Permission",
        "AWS::S3::BucketPolicy",
        "AWS::SNS::TopicPolicy",
        "AWS::SQS::QueuePolicy",
    }
)

ChangeKind = Literal["add", "update", "remove"]
_SYMBOLS: dict[str, str] = {"add": "+", "update": "~", "remove": "-"}


@dataclass(frozen=True)
class SecurityChange:
    logical_id: str
    resource_type: str
    kind: ChangeKind


def security_changes(old_template: dict[str, Any], new_template: dict[str, Any]) -> list[SecurityChange]:
    old_resources = old_template.get("Resources") or {}
    new_resources = new_template.get("Resources") or {}
    changes: list[SecurityChange] = []
    for logical_id in sorted(set(old_resources) | set(new_resources)):
        old = old_resources.get(logical_id)
        new = new_resources.get(logical_id)
        resource_type = str((new or old or {}).get("Type", ""))
        if resource_type not in SECURITY_SENSITIVE_TYPES:
            continue
        if old is None:
            changes.append(SecurityChange(logical_id, resource_type, "add"))
        elif new is None:
            changes.append(SecurityChange(logical_id, resource_type, "remove"))
        elif old != new:
            changes.append(SecurityChange(logical_id, resource_type, "update"))
    return changes


def print_security_diff(
    old_template: dict[str, Any],
    stack: StackArtifact,
    require_approval: RequireApproval,
) -> bool:
    """Log security-sensitive changes and return whether they need approval.

    ``BROADENING`` ignores pure removals; ``ANY_CHANGE`` counts everything.
    """
    if require_approval is RequireApproval.NEVER:
        return False
    changes = security_changes(old_template, stack.template)
    if require_approval is RequireApproval.BROADENING:
        changes = [change for change in changes if change.kind != "remove"]
    if not changes:
        return False

    logger.warning(
        "%s: this deployment will make potentially sensitive changes according to your current "
        "security approval level (--require-approval %s).",
        stack.display_name,
        require_approval.value,
    )
    for change in changes:
        logger.warning("  [%s] %s %s", _SYMBOLS[change.kind], change.resource_type, change.logical_id)
    return True
