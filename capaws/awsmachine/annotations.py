"""Reading and writing annotations on machine objects, optionally as JSON."""

from __future__ import annotations

import json
from typing import Any


def _annotations(machine: Any) -> dict[str, str]:
    if getattr(machine, "annotations", None) is None:
        machine.annotations = {}
    return machine.annotations


def update_machine_annotation_json(machine: Any, annotation: str, content: dict[str, Any]) -> None:
    """Store ``content`` as compact JSON with sorted keys under ``annotation``."""
    encoded = json.dumps(content, separators=(",", ":"), sort_keys=True)
    update_machine_annotation(machine, annotation, encoded)


def update_machine_annotation(machine: Any, annotation: str, content: str) -> None:
    """Set ``annotation`` on ``machine`` to ``content``."""
    _annotations(machine)[annotation] = content


def machine_annotation_json(machine: Any, annotation: str) -> dict[str, Any]:
    """Decode the JSON object stored under ``annotation``; empty if absent.

    Raises ValueError when the value is not a JSON object.
    """
    raw = machine_annotation(machine, annotation)
    if not raw:
        return {}
    decoded = json.loads(raw)
    if not isinstance(decoded, dict):
        raise ValueError(f"annotation {annotation!r} does not hold a JSON object")
    return decoded


def machine_annotation(machine: Any, annotation: str) -> str:
    """Return the value of ``annotation``, or an empty string."""
    return (getattr(machine, "annotations", None) or {}).get(annotation, "")