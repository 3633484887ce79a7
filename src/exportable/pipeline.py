"""
Streaming export pipeline.

    source --projection--> cursor --> transform_records --> stringify --> sink

Every stage is a generator pulled by the next one, so a record is only read
from the cursor when the consumer asks for the next chunk of CSV text. At
most one source record is in flight regardless of result size.
"""

from __future__ import annotations

import csv
import datetime as _dt
import decimal
import io
import json
import logging
from dataclasses import dataclass, fields as dc_fields, replace
from typing import Any, Callable, Dict, Iterable, Iterator, List, Mapping, Optional

from .compiler import compile_overrides, exportables_for, registry
from .config import DEFAULT_SETTINGS, ExportSettings
from .fields import deep_get
from .types import MISSING, Columns, DescriptorMapping, ExportDescriptor

logger = logging.getLogger(__name__)

Callback = Callable[[Optional[BaseException]], Any]


class ExportAborted(Exception):
    """Raised into the completion callback when a stream is closed early."""


# ---------------------------------------------------------------------------
# Options
# ---------------------------------------------------------------------------

@dataclass
class ExportOptions:
    """
    Named optional arguments shared by every export surface.

    filter    equality conditions; ``filter["q"]`` asks for free-text search
    sort      {path: 1 | -1}
    query     an already built query/statement (skips query construction)
    fields    override mapping (aggregations), config or compiled
    sink      object with ``write(str)``
    callback  called once with the error, or None on success
    """

    filter: Optional[Dict[str, Any]] = None
    sort: Optional[Dict[str, int]] = None
    query: Any = None
    fields: Optional[Mapping[str, Any]] = None
    sink: Any = None
    callback: Optional[Callback] = None


def resolve_options(options: Optional[ExportOptions] = None, **kwargs: Any) -> ExportOptions:
    """Merge an options object with keyword arguments; keywords win when not None."""
    base = options or ExportOptions()
    known = {f.name for f in dc_fields(ExportOptions)}
    unknown = set(kwargs) - known
    if unknown:
        raise TypeError(f"Unknown export option(s): {', '.join(sorted(unknown))}")
    changes = {k: v for k, v in kwargs.items() if v is not None}
    return replace(base, **changes)


# ---------------------------------------------------------------------------
# Stages
# ---------------------------------------------------------------------------

def select_fields(mapping: DescriptorMapping) -> Dict[str, int]:
    """Projection handed to the source: only exported paths are fetched."""
    return {path: 1 for path in dict.fromkeys(mapping)}


def sorted_descriptors(mapping: DescriptorMapping) -> List[ExportDescriptor]:
    # stable: equal orders keep declaration order
    return sorted(mapping.values(), key=lambda d: d.order)


def _fans_out(descriptor: ExportDescriptor, formatted: Any) -> bool:
    if isinstance(formatted, Columns):
        return True
    if descriptor.fanout is True:
        if not isinstance(formatted, Mapping):
            raise TypeError(
                f"Formatter for '{descriptor.path}' is declared fanout but returned "
                f"{type(formatted).__name__}"
            )
        return True
    if descriptor.fanout is False:
        return False
    return isinstance(formatted, Mapping)


def format_record(
    record: Any,
    descriptors: Iterable[ExportDescriptor],
    settings: ExportSettings = DEFAULT_SETTINGS,
) -> Dict[str, Any]:
    """Project one source record into an output row keyed by header."""
    row: Dict[str, Any] = {}
    for descriptor in descriptors:
        value = deep_get(record, descriptor.path, MISSING)
        formatted = descriptor.format(value, record)
        if _fans_out(descriptor, formatted):
            row.update(formatted)
        else:
            row[descriptor.header] = formatted

    replacement = settings.comma_replacement
    if replacement is not None:
        for key, value in row.items():
            if isinstance(value, str):
                row[key] = value.replace(",", replacement)
    return row


def transform_records(
    records: Iterable[Any],
    mapping: DescriptorMapping,
    settings: ExportSettings = DEFAULT_SETTINGS,
) -> Iterator[Dict[str, Any]]:
    descriptors = sorted_descriptors(mapping)
    for record in records:
        yield format_record(record, descriptors, settings)


def to_cell(value: Any) -> Any:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (_dt.date, _dt.time)):
        return value.isoformat()
    if isinstance(value, decimal.Decimal):
        return str(value)
    if isinstance(value, Mapping):
        return json.dumps(dict(value), default=str, sort_keys=False)
    if isinstance(value, (list, tuple, set, frozenset)):
        return ";".join(str(to_cell(v)) for v in value)
    return value


def stringify(rows: Iterable[Mapping[str, Any]]) -> Iterator[str]:
    """
    Serialise rows to CSV text, one chunk per row.

    The header comes from the first row's keys; later rows are written
    against those columns (unknown keys ignored, missing keys empty).
    """
    buffer = io.StringIO()
    writer = None
    for row in rows:
        if writer is None:
            writer = csv.DictWriter(
                buffer,
                fieldnames=list(row.keys()),
                extrasaction="ignore",
                restval="",
                lineterminator="\n",
                quoting=csv.QUOTE_MINIMAL,
            )
            writer.writeheader()
        writer.writerow({k: to_cell(v) for k, v in row.items()})
        chunk = buffer.getvalue()
        buffer.seek(0)
        buffer.truncate(0)
        yield chunk


def open_cursor(source: Any, projection: Dict[str, int]) -> Iterable[Any]:
    """
    Turn a source into an iterable of records.

    Sources exposing ``open_cursor(projection)`` get the projection before the
    first read; any other iterable is used as is.
    """
    opener = getattr(source, "open_cursor", None)
    if callable(opener):
        return opener(projection)
    if not hasattr(source, "__iter__"):
        raise TypeError(f"Export source is not iterable: {source!r}")
    return source


# ---------------------------------------------------------------------------
# Stream head
# ---------------------------------------------------------------------------

class ExportStream:
    """
    Readable head of an export pipeline: an iterator of CSV text chunks.

    Nothing is read from the source until the first chunk is requested.
    Completion is reported once through ``callback``; without a callback
    errors are raised to the consumer. ``error`` keeps the failure either way.
    """

    def __init__(
        self,
        source: Any,
        mapping: DescriptorMapping,
        settings: ExportSettings = DEFAULT_SETTINGS,
        callback: Optional[Callback] = None,
    ) -> None:
        self.mapping = mapping
        self.settings = settings
        self.projection = select_fields(mapping)
        self.count = 0
        self.error: Optional[BaseException] = None
        self._callback = callback
        self._done = False
        self._cursor: Any = None

        self._records = self._pull(source)
        self._rows = transform_records(self._records, mapping, settings)
        self._chunks = stringify(self._rows)

    def _pull(self, source: Any) -> Iterator[Any]:
        self._cursor = open_cursor(source, self.projection)
        logger.debug("Export started with %d field(s)", len(self.mapping))
        for record in self._cursor:
            self.count += 1
            yield record

    # -- iteration ----------------------------------------------------------
    def __iter__(self) -> "ExportStream":
        return self

    def __next__(self) -> str:
        if self._done:
            raise StopIteration
        try:
            return next(self._chunks)
        except StopIteration:
            self._finish(None)
            raise
        except Exception as exc:
            self._finish(exc)
            if self._callback is None:
                raise
            raise StopIteration from None

    def read(self) -> str:
        """Drain the remaining chunks into one string."""
        return "".join(self)

    def pipe(self, sink: Any) -> Any:
        """Write every chunk to ``sink`` and return it."""
        for chunk in self:
            try:
                sink.write(chunk)
            except Exception as exc:
                self._finish(exc)
                if self._callback is None:
                    raise
                return sink
        flush = getattr(sink, "flush", None)
        if callable(flush) and self.error is None:
            flush()
        return sink

    @property
    def closed(self) -> bool:
        return self._done

    def close(self) -> None:
        """Tear down every stage; an unfinished export reports ExportAborted."""
        if not self._done:
            self._finish(ExportAborted("export closed before completion"), quiet=True)

    def __enter__(self) -> "ExportStream":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    # -- teardown -----------------------------------------------------------
    def _teardown(self) -> None:
        for stage in (self._chunks, self._rows, self._records):
            stage.close()
        close = getattr(self._cursor, "close", None)
        if callable(close):
            close()

    def _finish(self, exc: Optional[BaseException], quiet: bool = False) -> None:
        if self._done:
            return
        self._done = True
        self.error = exc
        self._teardown()
        if exc is None:
            logger.debug("Export finished: %d record(s)", self.count)
        elif quiet:
            logger.debug("Export closed after %d record(s)", self.count)
        else:
            logger.error("Export failed after %d record(s): %s", self.count, exc)
        if self._callback is not None:
            self._callback(exc)


# ---------------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------------

def export_csv(
    source: Any,
    mapping: DescriptorMapping,
    sink: Any = None,
    callback: Optional[Callback] = None,
    settings: Optional[ExportSettings] = None,
) -> Any:
    """
    Run ``source`` through the export pipeline.

    Returns the ``ExportStream`` when no sink is given, otherwise pumps the
    stream into ``sink`` and returns the sink.
    """
    stream = ExportStream(source, mapping, settings or registry.settings, callback=callback)
    if sink is None:
        return stream
    return stream.pipe(sink)


def export_records(
    records: Any,
    schema: Any = None,
    options: Optional[ExportOptions] = None,
    settings: Optional[ExportSettings] = None,
    **kwargs: Any,
) -> Any:
    """
    Export any iterable of records (dicts, objects, pydantic documents).

    ``schema`` is compiled through the registry; ``fields`` replaces it
    wholesale when given.
    """
    opts = resolve_options(options, **kwargs)
    settings = settings or registry.settings
    if opts.fields is not None:
        mapping = compile_overrides(opts.fields, settings)
    elif schema is not None:
        mapping = exportables_for(schema, settings)
    else:
        raise TypeError("export_records() needs a schema or fields")
    return export_csv(records, mapping, sink=opts.sink, callback=opts.callback, settings=settings)
