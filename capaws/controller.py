"""Registry of controller set-up functions run against a manager."""

from __future__ import annotations

from typing import Any, Callable

ManagerFunc = Callable[[Any], None]

ADD_TO_MANAGER_FUNCS: list[ManagerFunc] = []


def register(func: ManagerFunc) -> ManagerFunc:
    """Add ``func`` to the functions run by :func:`add_to_manager`; usable as a decorator."""
    ADD_TO_MANAGER_FUNCS.append(func)
    return func


def add_to_manager(manager: Any) -> None:
    """Run every registered function with ``manager``, stopping at the first error."""
    for func in ADD_TO_MANAGER_FUNCS:
        func(manager)