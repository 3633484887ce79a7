"""
Exportable-schema compiler.

Walks a field tree once and produces a read-only mapping of field path to
``ExportDescriptor``. Only leaves whose ``exportable`` marker is ``True`` or
an option mapping are collected; everything else is left out.
"""

from __future__ import annotations

import functools
import inspect
import logging
import numbers
import sys
import types
import weakref
from pathlib import Path
from types import MappingProxyType
from typing import Any, Callable, Dict, Mapping, Optional, Union

import jinja2
import yaml

from .config import DEFAULT_SETTINGS, ExportSettings
from .fields import last_segment, start_case, walk_fields
from .types import MISSING, DescriptorMapping, ExportDescriptor, FieldNode

logger = logging.getLogger(__name__)

# unordered fields sort after every explicit order
ORDER_LAST = sys.maxsize

_KINDS = {"number": "number", "string": "string", int: "number", float: "number", str: "string"}


# ---------------------------------------------------------------------------
# Formatter helpers
# ---------------------------------------------------------------------------

_expr_env = jinja2.Environment(autoescape=False)


def expression_formatter(expr: str) -> Callable[[Any, Any], Any]:
    """Compile a jinja2 expression (``value | upper``) into a formatter."""
    compiled = _expr_env.compile_expression(expr, undefined_to_none=True)

    def _format(value, record):
        return compiled(value=value, record=record)

    _format.__name__ = f"expr<{expr}>"
    return _format


def _accepts_record(fn: Callable) -> bool:
    try:
        sig = inspect.signature(fn)
    except (TypeError, ValueError):
        return True
    positional = 0
    for p in sig.parameters.values():
        if p.kind is p.VAR_POSITIONAL:
            return True
        if p.kind in (p.POSITIONAL_ONLY, p.POSITIONAL_OR_KEYWORD):
            positional += 1
    return positional >= 2


_PRODUCER_TYPES = (types.FunctionType, types.BuiltinFunctionType, functools.partial)


def is_producer(value: Any) -> bool:
    """
    True for a plain function, builtin or ``functools.partial`` callable
    without arguments (``datetime.now``, ``lambda: 0``).

    Classes, bound methods and callable instances are values, not producers.
    """
    if not isinstance(value, _PRODUCER_TYPES):
        return False
    try:
        inspect.signature(value).bind()
    except TypeError:
        return False
    except ValueError:
        # builtins without an introspectable signature
        return True
    return True


def make_formatter(
    user_format: Optional[Callable],
    default: Any,
    settings: ExportSettings,
) -> Callable[..., Any]:
    """
    Wrap a user formatter with default substitution.

    The returned callable takes ``(value=MISSING, record=None)``: a missing or
    None value becomes ``default``, a zero-argument producer is invoked, and
    the user formatter runs last. A None result keeps the unformatted value.
    """
    if isinstance(user_format, str):
        user_format = expression_formatter(user_format)
    if user_format is not None and not callable(user_format):
        raise TypeError(f"format must be callable or an expression string, got {user_format!r}")

    with_record = user_format is not None and _accepts_record(user_format)
    legacy = settings.falsy_format_fallback

    def format(value: Any = MISSING, record: Any = None) -> Any:
        if value is MISSING or value is None:
            value = default
        if is_producer(value):
            value = value()
        if user_format is None:
            return value
        if with_record:
            result = user_format(value, {} if record is None else record)
        else:
            result = user_format(value)
        if result is None or (legacy and not result):
            return value
        return result

    return format


# ---------------------------------------------------------------------------
# Descriptor construction
# ---------------------------------------------------------------------------

def normalize_marker(path: str, marker: Any) -> Optional[Dict[str, Any]]:
    """Return export options for a marker, or None when the leaf is not exportable."""
    if marker is True:
        return {}
    if isinstance(marker, Mapping):
        return dict(marker)
    if marker not in (None, False):
        logger.debug("Ignoring malformed exportable marker on %s: %r", path, marker)
    return None


def resolve_default(options: Mapping[str, Any], node: FieldNode, settings: ExportSettings) -> Any:
    if options.get("default") is not None:
        return options["default"]
    if node.default is not None:
        return node.default
    if node.kind == "number":
        return settings.number_missing_value
    if node.kind == "string":
        return settings.string_missing_value
    return None


def resolve_order(path: str, order: Any) -> Any:
    if order is None:
        return ORDER_LAST
    if isinstance(order, bool) or not isinstance(order, numbers.Real):
        logger.debug("Ignoring unusable order on %s: %r", path, order)
        return ORDER_LAST
    return order


def build_descriptor(
    node: FieldNode,
    options: Mapping[str, Any],
    settings: ExportSettings = DEFAULT_SETTINGS,
) -> ExportDescriptor:
    segment = last_segment(node.path)
    header = options.get("header") or start_case(segment) or segment
    default = resolve_default(options, node, settings)
    return ExportDescriptor(
        path=node.path,
        header=str(header),
        order=resolve_order(node.path, options.get("order")),
        format=make_formatter(options.get("format"), default, settings),
        default=default,
        fanout=options.get("fanout"),
    )


def compile_exportables(schema: Any, settings: Optional[ExportSettings] = None) -> DescriptorMapping:
    """Collect the exportable leaves of ``schema`` into a read-only mapping."""
    settings = settings or DEFAULT_SETTINGS
    exportables: Dict[str, ExportDescriptor] = {}
    for node in walk_fields(schema):
        options = normalize_marker(node.path, node.marker)
        if options is None:
            continue
        exportables[node.path] = build_descriptor(node, options, settings)
    logger.debug("Compiled %d exportable field(s) for %r", len(exportables), schema)
    return MappingProxyType(exportables)


# ---------------------------------------------------------------------------
# Ad-hoc mappings
# ---------------------------------------------------------------------------

def compile_overrides(
    config: Mapping[str, Any],
    settings: Optional[ExportSettings] = None,
) -> DescriptorMapping:
    """
    Compile a caller-supplied ``{path: True | options}`` mapping.

    Used where the exported shape does not follow a declared schema, e.g.
    aggregation results. Options may carry ``type`` (number | string) to pick
    the missing-value fallback. Compiled descriptors pass through unchanged.
    """
    settings = settings or DEFAULT_SETTINGS
    out: Dict[str, ExportDescriptor] = {}
    for path, marker in config.items():
        if isinstance(marker, ExportDescriptor):
            out[path] = marker
            continue
        options = normalize_marker(path, marker)
        if options is None:
            continue
        declared = options.pop("type", None)
        kind = _KINDS.get(declared) if isinstance(declared, (str, type)) else None
        node = FieldNode(path=path, marker=marker, kind=kind)
        out[path] = build_descriptor(node, options, settings)
    return MappingProxyType(out)


def with_overrides(
    mapping: DescriptorMapping,
    overrides: Mapping[str, Any],
    settings: Optional[ExportSettings] = None,
) -> DescriptorMapping:
    """Shallow-clone ``mapping`` and replace or add the given descriptors."""
    merged = dict(mapping)
    merged.update(compile_overrides(overrides, settings))
    return MappingProxyType(merged)


def load_overrides(path: Union[str, Path], settings: Optional[ExportSettings] = None) -> DescriptorMapping:
    """
    Load an override mapping from YAML.

    Either the mapping itself or a document with a ``fields`` block::

        version: "1"
        fields:
          name: true
          total: {header: Total, order: 1, type: number, format: "value | round(2)"}
    """
    p = Path(path).expanduser().resolve()
    if not p.is_file():
        raise FileNotFoundError(p)
    doc = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
    if not isinstance(doc, dict):
        raise ValueError(f"{p}: override mapping must be a YAML mapping")
    fields = doc.get("fields", doc)
    if not isinstance(fields, dict):
        raise ValueError(f"{p}: 'fields' must be a mapping")
    fields = {k: v for k, v in fields.items() if k != "version"}
    return compile_overrides(fields, settings)


# ---------------------------------------------------------------------------
# Compile-or-fetch
# ---------------------------------------------------------------------------

class ExportableRegistry:
    """
    Owns compiled mappings, keyed by schema identity.

    ``attach`` compiles a schema on first sight and returns the cached
    mapping afterwards; schemas themselves are never mutated.
    """

    def __init__(self, settings: Optional[ExportSettings] = None) -> None:
        self._settings = settings
        self._by_type: "weakref.WeakKeyDictionary[Any, DescriptorMapping]" = weakref.WeakKeyDictionary()
        self._by_id: Dict[int, tuple] = {}

    @property
    def settings(self) -> ExportSettings:
        if self._settings is None:
            self._settings = ExportSettings.from_env()
        return self._settings

    def get(self, schema: Any) -> Optional[DescriptorMapping]:
        if isinstance(schema, type):
            return self._by_type.get(schema)
        hit = self._by_id.get(id(schema))
        return hit[1] if hit is not None else None

    def is_attached(self, schema: Any) -> bool:
        return self.get(schema) is not None

    def attach(self, schema: Any) -> DescriptorMapping:
        cached = self.get(schema)
        if cached is not None:
            return cached
        mapping = compile_exportables(schema, self.settings)
        if isinstance(schema, type):
            self._by_type[schema] = mapping
        else:
            # hold the tree so its id cannot be recycled
            self._by_id[id(schema)] = (schema, mapping)
        return mapping

    def clear(self) -> None:
        self._by_type.clear()
        self._by_id.clear()


registry = ExportableRegistry()


def exportables_for(schema: Any, settings: Optional[ExportSettings] = None) -> DescriptorMapping:
    """
    Compile-or-fetch through the process-wide registry.

    Settings other than the registry's compile a private mapping, so the
    cached one never carries a caller's missing values.
    """
    if settings is None or settings == registry.settings:
        return registry.attach(schema)
    return compile_exportables(schema, settings)
