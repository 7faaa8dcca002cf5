"""Keeping instance tags in line with a machine's additional tags."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from capaws.awsmachine.annotations import (
    machine_annotation_json,
    update_machine_annotation_json,
)

TAGS_LAST_APPLIED_ANNOTATION = "sigs.k8s.io/cluster-api-provider-aws-last-applied-tags"


@dataclass
class TagChanges:
    """Outcome of comparing the last applied tags with the wanted ones."""

    changed: bool = False
    created: dict[str, str] = field(default_factory=dict)
    deleted: dict[str, str] = field(default_factory=dict)
    new_annotation: dict[str, Any] = field(default_factory=dict)


def tags_changed(annotation: dict[str, Any], src: dict[str, str]) -> TagChanges:
    """Work out which tags to create or update and which to delete."""
    result = TagChanges()

    for tag, value in annotation.items():
        if tag not in src:
            if not isinstance(value, str):
                raise TypeError(f"tag {tag!r} has a non-string value in the annotation")
            result.deleted[tag] = value
            result.changed = True

    for tag, value in src.items():
        result.new_annotation[tag] = value
        if tag not in annotation or annotation[tag] != value:
            result.created[tag] = value
            result.changed = True

    return result


def ensure_tags(svc: Any, machine: Any, instance_id: str, additional_tags: dict[str, str]) -> bool:
    """Push changed tags to ``svc`` and record them on ``machine``.

    Returns whether anything changed.
    """
    annotation = machine_annotation_json(machine, TAGS_LAST_APPLIED_ANNOTATION)
    changes = tags_changed(annotation, additional_tags)
    if changes.changed:
        svc.update_resource_tags(instance_id, changes.created, changes.deleted)
        update_machine_annotation_json(machine, TAGS_LAST_APPLIED_ANNOTATION, changes.new_annotation)
    return changes.changed