"""
Field-tree walkers.

A field tree is whatever describes the shape of a record kind. Three shapes
are understood, each reduced to a flat sequence of ``FieldNode`` leaves in
declaration order:

  - plain dict trees   {"name": {"type": str, "exportable": True},
                        "contact": {"phone": {"type": str, "exportable": True}}}
  - pydantic models    Field(json_schema_extra={"exportable": True})
  - SQLAlchemy models  mapped_column(..., info={"exportable": True})

Nested containers are traversed; arrays (of scalars or of sub-documents) are
single leaves.
"""

from __future__ import annotations

import decimal
import re
import typing
from typing import Any, Iterator, List, Mapping, Optional, Tuple

from pydantic import BaseModel
from sqlalchemy import inspect as sa_inspect
from sqlalchemy import types as sqltypes
from sqlalchemy.orm import ColumnProperty, Mapper, RelationshipProperty

from .types import MISSING, FieldNode

MARKER = "exportable"

_SEPARATORS = re.compile(r"[\W_]+")


def _split_words(chunk: str) -> List[str]:
    # boundaries: lower->Upper, letter<->digit, last capital of an acronym
    words: List[str] = []
    cur = ""
    for i, ch in enumerate(chunk):
        if cur:
            prev = cur[-1]
            nxt = chunk[i + 1] if i + 1 < len(chunk) else ""
            if (
                (ch.isupper() and prev.islower())
                or ch.isdigit() != prev.isdigit()
                or (ch.isupper() and prev.isupper() and nxt.islower())
            ):
                words.append(cur)
                cur = ""
        cur += ch
    if cur:
        words.append(cur)
    return words


def start_case(name: str) -> str:
    """``firstName`` -> ``First Name``, ``updated_at`` -> ``Updated At``, ``café`` -> ``Café``."""
    words = [w for chunk in _SEPARATORS.split(name) if chunk for w in _split_words(chunk)]
    return " ".join(w[:1].upper() + w[1:] for w in words)


def last_segment(path: str) -> str:
    return path.rsplit(".", 1)[-1]


# ---------------------------------------------------------------------------
# Record access
# ---------------------------------------------------------------------------

def deep_get(record: Any, path: str, default: Any = None) -> Any:
    """Read a dotted path from mappings, plain objects or ORM instances."""
    cur = record
    for token in path.split("."):
        if cur is None or cur is MISSING:
            return default
        if isinstance(cur, Mapping):
            cur = cur.get(token, MISSING)
        else:
            cur = getattr(cur, token, MISSING)
    return default if cur is MISSING else cur


# ---------------------------------------------------------------------------
# Kind inference
# ---------------------------------------------------------------------------

_NUMBER_TYPES = (int, float, decimal.Decimal)


def _kind_of_python_type(tp: Any) -> Optional[str]:
    if not isinstance(tp, type) or tp is bool:
        return None
    if issubclass(tp, _NUMBER_TYPES):
        return "number"
    if issubclass(tp, str):
        return "string"
    return None


def _kind_of_column_type(col_type: Any) -> Optional[str]:
    if isinstance(col_type, (sqltypes.Integer, sqltypes.Numeric)):
        return "number"
    if isinstance(col_type, sqltypes.String):
        return "string"
    return None


# ---------------------------------------------------------------------------
# Dict trees
# ---------------------------------------------------------------------------

def _is_dict_leaf(node: Any) -> bool:
    if not isinstance(node, Mapping):
        return True
    return "type" in node and not isinstance(node["type"], Mapping)


def walk_dict_tree(tree: Mapping[str, Any], prefix: str = "") -> Iterator[FieldNode]:
    for name, node in tree.items():
        path = f"{prefix}{name}"
        if not _is_dict_leaf(node):
            yield from walk_dict_tree(node, prefix=f"{path}.")
            continue
        if isinstance(node, Mapping):
            yield FieldNode(
                path=path,
                marker=node.get(MARKER),
                kind=_kind_of_python_type(node.get("type")),
                default=node.get("default"),
            )
        else:
            # bare type or [type] shorthand, never exportable
            yield FieldNode(path=path, kind=_kind_of_python_type(node))


# ---------------------------------------------------------------------------
# Pydantic models
# ---------------------------------------------------------------------------

def _unwrap_annotation(tp: Any) -> Any:
    """Strip Optional[...] / Annotated[...] down to the concrete type."""
    while True:
        origin = typing.get_origin(tp)
        if origin is typing.Annotated:
            tp = typing.get_args(tp)[0]
            continue
        if origin is typing.Union or type(tp).__name__ == "UnionType":
            args = [a for a in typing.get_args(tp) if a is not type(None)]
            if len(args) == 1:
                tp = args[0]
                continue
        return tp


def _is_model_type(tp: Any) -> bool:
    return isinstance(tp, type) and issubclass(tp, BaseModel)


def walk_pydantic_model(
    model: type, prefix: str = "", _stack: Tuple[type, ...] = ()
) -> Iterator[FieldNode]:
    for name, info in model.model_fields.items():
        path = f"{prefix}{name}"
        tp = _unwrap_annotation(info.annotation)
        extra = info.json_schema_extra if isinstance(info.json_schema_extra, dict) else {}
        marker = extra.get(MARKER)

        if _is_model_type(tp) and marker is None:
            if tp in _stack or tp is model:
                continue
            yield from walk_pydantic_model(tp, prefix=f"{path}.", _stack=_stack + (model,))
            continue

        default = None if info.is_required() or info.default_factory is not None else info.default
        yield FieldNode(path=path, marker=marker, kind=_kind_of_python_type(tp), default=default)


# ---------------------------------------------------------------------------
# SQLAlchemy mapped classes
# ---------------------------------------------------------------------------

def _mapper_of(schema: Any) -> Optional[Mapper]:
    if not isinstance(schema, type):
        return None
    insp = sa_inspect(schema, raiseerr=False)
    return insp if isinstance(insp, Mapper) else None


def _column_default(col: Any) -> Any:
    default = getattr(col, "default", None)
    if default is not None and getattr(default, "is_scalar", False):
        return default.arg
    return None


def walk_mapper(
    mapper: Mapper, prefix: str = "", _stack: Tuple[Mapper, ...] = ()
) -> Iterator[FieldNode]:
    for prop in mapper.attrs:
        path = f"{prefix}{prop.key}"

        if isinstance(prop, ColumnProperty):
            col = prop.columns[0]
            col_info = getattr(col, "info", None) or {}
            marker = prop.info.get(MARKER, col_info.get(MARKER))
            yield FieldNode(
                path=path,
                marker=marker,
                kind=_kind_of_column_type(col.type),
                default=_column_default(col),
            )

        elif isinstance(prop, RelationshipProperty):
            marker = prop.info.get(MARKER)
            if marker is not None or prop.uselist:
                yield FieldNode(path=path, marker=marker)
                continue
            target = prop.mapper
            if target is mapper or target in _stack:
                continue
            yield from walk_mapper(target, prefix=f"{path}.", _stack=_stack + (mapper,))


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------

def walk_fields(schema: Any) -> List[FieldNode]:
    """Flatten any supported field tree into its leaves."""
    if isinstance(schema, Mapping):
        return list(walk_dict_tree(schema))
    if _is_model_type(schema):
        return list(walk_pydantic_model(schema))
    mapper = _mapper_of(schema)
    if mapper is not None:
        return list(walk_mapper(mapper))
    raise TypeError(f"Unsupported field tree: {schema!r}")


def is_mapped_class(schema: Any) -> bool:
    return _mapper_of(schema) is not None

