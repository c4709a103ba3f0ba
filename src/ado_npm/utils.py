"""Small sequence helpers shared across modules."""

from __future__ import annotations

from typing import Iterable, Optional, TypeVar, Union

T = TypeVar("T")


def as_list(*values: Union[T, list[T], tuple[T, ...], None]) -> list[T]:
    """Flatten values and one level of lists/tuples into a single list.

    ``None`` arguments are skipped.

    Example::

        as_list(200, [401, 404]) == [200, 401, 404]
    """
    result: list[T] = []
    for value in values:
        if value is None:
            continue
        if isinstance(value, (list, tuple)):
            result.extend(value)
        else:
            result.append(value)
    return result


def unique(values: Iterable[Optional[T]]) -> list[T]:
    """Drop ``None`` entries and duplicates, keeping first-seen order.

    Example::

        unique(["a", "b", "a", None, "b"]) == ["a", "b"]
    """
    seen: set[T] = set()
    result: list[T] = []
    for value in values:
        if value is None or value in seen:
            continue
        seen.add(value)
        result.append(value)
    return result
