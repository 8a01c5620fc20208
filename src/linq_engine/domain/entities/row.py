"""Result rows and materialized result sets."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any, Iterator, overload


class ResultRow(Mapping[str, Any]):
    """A row of query output: ordered column names mapped to typed values.

    Rows compare equal to any mapping with the same items, and values can
    be read by column name, by position, or as attributes::

        row["Title"], row[0], row.Title
    """

    __slots__ = ("_columns", "_values")

    def __init__(self, columns: Sequence[str], values: Sequence[Any]) -> None:
        if len(columns) != len(values):
            raise ValueError(
                f"Row has {len(columns)} columns but {len(values)} values"
            )
        object.__setattr__(self, "_columns", tuple(columns))
        object.__setattr__(self, "_values", tuple(values))

    @property
    def columns(self) -> tuple[str, ...]:
        return self._columns

    @property
    def values_tuple(self) -> tuple[Any, ...]:
        return self._values

    def __getitem__(self, key: str | int) -> Any:
        if isinstance(key, int):
            return self._values[key]
        try:
            idx = self._columns.index(key)
        except ValueError as e:
            raise KeyError(f"Column '{key}' not found") from e
        return self._values[idx]

    def __getattr__(self, name: str) -> Any:
        if name.startswith("_"):
            raise AttributeError(name)
        try:
            return self[name]
        except KeyError as e:
            raise AttributeError(name) from e

    def __setattr__(self, name: str, value: Any) -> None:
        raise AttributeError("ResultRow is immutable")

    def __contains__(self, key: object) -> bool:
        return key in self._columns

    def __iter__(self) -> Iterator[str]:
        return iter(self._columns)

    def __len__(self) -> int:
        return len(self._columns)

    def __hash__(self) -> int:
        return hash((self._columns, self._values))

    def to_dict(self) -> dict[str, Any]:
        return dict(zip(self._columns, self._values))

    def __repr__(self) -> str:
        pairs = ", ".join(f"{c}={v!r}" for c, v in zip(self._columns, self._values))
        return f"ResultRow({pairs})"


class ResultSet(Sequence[ResultRow]):
    """A fully materialized, re-iterable query result.

    Produced by eager evaluation ("ToList"); iterating it never touches the
    data source again.
    """

    def __init__(self, columns: Sequence[str], rows: Sequence[ResultRow]) -> None:
        self._columns = tuple(columns)
        self._rows = tuple(rows)

    @property
    def columns(self) -> tuple[str, ...]:
        return self._columns

    @overload
    def __getitem__(self, index: int) -> ResultRow: ...

    @overload
    def __getitem__(self, index: slice) -> Sequence[ResultRow]: ...

    def __getitem__(self, index: int | slice) -> ResultRow | Sequence[ResultRow]:
        return self._rows[index]

    def __len__(self) -> int:
        return len(self._rows)

    def __iter__(self) -> Iterator[ResultRow]:
        return iter(self._rows)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, ResultSet):
            return self._rows == other._rows
        if isinstance(other, (list, tuple)):
            return list(self._rows) == list(other)
        return NotImplemented

    __hash__ = None  # type: ignore[assignment]

    def to_dicts(self) -> list[dict[str, Any]]:
        return [row.to_dict() for row in self._rows]

    def __repr__(self) -> str:
        return f"ResultSet({len(self._rows)} rows, columns={list(self._columns)})"
