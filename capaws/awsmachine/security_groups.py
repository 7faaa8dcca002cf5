"""Keeping instance security groups in line with a machine's additional groups."""

from __future__ import annotations

from typing import Any, Iterable, Mapping

from capaws.awsmachine.annotations import (
    machine_annotation_json,
    update_machine_annotation_json,
)

SECURITY_GROUPS_LAST_APPLIED_ANNOTATION = (
    "sigs.k8s.io/cluster-api-provider-aws-last-applied-security-groups"
)


def _reference_id(ref: Any) -> str:
    group_id = getattr(ref, "id", None)
    if group_id is None:
        raise ValueError("security group reference has no ID")
    return group_id


def security_groups_changed(
    annotation: Mapping[str, Any],
    core: Iterable[str],
    additional: Iterable[Any],
    existing: Mapping[str, list[str]],
) -> tuple[bool, list[str]]:
    """Return whether the groups must change, and the sorted list of wanted group IDs.

    Groups recorded in ``annotation`` but no longer among ``additional`` are
    dropped, unless they are ``core`` groups, which are always kept.
    """
    state = {_reference_id(ref): True for ref in additional}
    for group_id in annotation:
        state.setdefault(group_id, False)
    for group_id in core:
        state[group_id] = True

    wanted = sorted(group_id for group_id, keep in state.items() if keep)

    for actual in existing.values():
        if sorted(actual) != wanted:
            return True, wanted
    return False, wanted


def ensure_security_groups(
    ec2svc: Any,
    scope: Any,
    additional: list[Any],
    existing: Mapping[str, list[str]],
) -> bool:
    """Apply the wanted security groups to the scope's instance.

    Returns whether anything changed.
    """
    machine = scope.provider_machine
    annotation = machine_annotation_json(machine, SECURITY_GROUPS_LAST_APPLIED_ANNOTATION)
    core = ec2svc.get_core_security_groups(scope)

    changed, ids = security_groups_changed(annotation, core, additional, existing)
    if not changed:
        return False

    ec2svc.update_instance_security_groups(scope.instance_id, ids)

    applied = {_reference_id(ref): {} for ref in additional}
    update_machine_annotation_json(machine, SECURITY_GROUPS_LAST_APPLIED_ANNOTATION, applied)
    return True