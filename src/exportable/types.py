from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional


# Raw value passed to a descriptor formatter when the record lacks the path.
class _Missing:
    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING = _Missing()


class Columns(dict):
    """
    Formatter result that fans one field out into several output columns.

    Each key becomes its own CSV column; returning any other value puts the
    result under the descriptor header.
    """


@dataclass(frozen=True)
class FieldNode:
    """One leaf of a field tree, as yielded by the walkers in ``fields``."""

    path: str
    marker: Any = None          # raw ``exportable`` option: None | True | dict | junk
    kind: Optional[str] = None  # number | string | None
    default: Any = None         # schema-level default


@dataclass(frozen=True)
class ExportDescriptor:
    """
    Compiled export configuration of a single field path.

    ``format(value, record)`` already carries the default substitution and
    the user formatter; the pipeline only reads the raw value and calls it.
    """

    path: str
    header: str
    order: float
    format: Callable[..., Any]
    default: Any = None
    fanout: Optional[bool] = None


DescriptorMapping = Mapping[str, ExportDescriptor]
