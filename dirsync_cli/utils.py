"""Small helpers shared by the reconcilers."""

from typing import Iterable, List, Sequence, TypeVar

T = TypeVar("T")


def difference(a: Sequence[T], b: Iterable[T]) -> List[T]:
    """Return the elements of ``a`` that are not in ``b``, keeping the order of ``a``."""
    excluded = set(b)
    return [x for x in a if x not in excluded]


def unique(values: Iterable[T]) -> List[T]:
    """Drop repeated values, keeping first occurrences."""
    seen = set()
    result = []
    for value in values:
        if value not in seen:
            seen.add(value)
            result.append(value)
    return result


def odata_quote(value: str) -> str:
    """Quote a string literal for use in an OData ``$filter`` expression."""
    return "'" + value.replace("'", "''") + "'"
