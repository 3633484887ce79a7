"""
SQLAlchemy host integration.

Three export surfaces converge on ``pipeline.export_csv``:

  export_model      a mapped class; builds the query from filter/search/sort
  export_query      an already built ``select(Model)`` statement
  export_aggregate  an aggregate ``select(...)``; projection is appended to
                    the statement and the field mapping may be overridden
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional

from sqlalchemy import inspect as sa_inspect
from sqlalchemy import select
from sqlalchemy.orm import ColumnProperty, Mapper, RelationshipProperty, Session, load_only, selectinload

from .compiler import compile_overrides, exportables_for, registry, with_overrides
from .config import ExportSettings
from .pipeline import ExportOptions, export_csv, resolve_options
from .types import DescriptorMapping

logger = logging.getLogger(__name__)

DEFAULT_SORT = {"updated_at": -1}

_DIRECTIONS = {1: "asc", -1: "desc", "asc": "asc", "desc": "desc", "ascending": "asc", "descending": "desc"}


# ---------------------------------------------------------------------------
# Statement helpers
# ---------------------------------------------------------------------------

def _entity_of(stmt: Any) -> Optional[type]:
    for desc in stmt.column_descriptions:
        entity = desc.get("entity")
        if entity is not None:
            return entity
    return None


def _selects_single_entity(stmt: Any) -> bool:
    descs = stmt.column_descriptions
    return len(descs) == 1 and descs[0].get("entity") is not None and descs[0].get("expr") is descs[0].get("entity")


def loader_options(mapper: Mapper, paths: Iterable[str]) -> List[Any]:
    """Translate exported paths into ``load_only``/``selectinload`` options."""
    columns: Dict[str, Any] = {}
    nested: Dict[str, List[str]] = {}
    for path in paths:
        head, _, rest = path.partition(".")
        if head not in mapper.attrs:
            continue
        prop = mapper.attrs[head]
        if isinstance(prop, ColumnProperty):
            columns[prop.key] = prop.class_attribute
        elif isinstance(prop, RelationshipProperty):
            sub = nested.setdefault(head, [])
            if rest:
                sub.append(rest)

    # related rows are located through the parent's local columns
    for head in nested:
        for col in mapper.attrs[head].local_columns:
            local = mapper.get_property_by_column(col)
            columns.setdefault(local.key, local.class_attribute)

    opts: List[Any] = []
    if columns:
        opts.append(load_only(*columns.values()))
    for head, sub in nested.items():
        prop = mapper.attrs[head]
        loader = selectinload(prop.class_attribute)
        sub_opts = loader_options(prop.mapper, sub) if sub else []
        if sub_opts:
            loader = loader.options(*sub_opts)
        opts.append(loader)
    return opts


def project_aggregate(stmt: Any, projection: Mapping[str, int]) -> Any:
    """Keep only the projected result columns of an aggregate statement."""
    keys = dict.fromkeys(path.split(".", 1)[0] for path in projection)
    selected = stmt.selected_columns
    cols = [selected[k] for k in keys if k in selected]
    if not cols:
        return stmt
    return stmt.with_only_columns(*cols, maintain_column_froms=True)


def order_by_clauses(model: type, sort: Mapping[str, Any], strict: bool = True) -> List[Any]:
    clauses = []
    for path, direction in sort.items():
        attr = getattr(model, path, None)
        if attr is None:
            if strict:
                raise ValueError(f"Unknown sort field '{path}' on {model.__name__}")
            continue
        how = _DIRECTIONS.get(direction.lower() if isinstance(direction, str) else direction)
        if how is None:
            raise ValueError(f"Invalid sort direction for '{path}': {direction!r}")
        clauses.append(attr.asc() if how == "asc" else attr.desc())
    return clauses


def build_query(
    model: type,
    filter: Optional[Mapping[str, Any]] = None,
    sort: Optional[Mapping[str, Any]] = None,
) -> Any:
    """
    Default export query for a model.

    ``filter["q"]`` goes to ``model.search(q, conditions)`` when the model
    provides one; otherwise the remaining conditions are equality filters.
    """
    conditions = dict(filter or {})
    q = conditions.pop("q", None)
    search = getattr(model, "search", None)
    if callable(search):
        stmt = search(q, conditions)
    else:
        stmt = select(model).filter_by(**conditions)

    if sort is None:
        clauses = order_by_clauses(model, DEFAULT_SORT, strict=False)
    else:
        clauses = order_by_clauses(model, sort)
    if clauses:
        stmt = stmt.order_by(*clauses)
    return stmt


# ---------------------------------------------------------------------------
# Cursor sources
# ---------------------------------------------------------------------------

class StatementSource:
    """
    Lazily executes a statement once the pipeline asks for a cursor.

    ORM entity statements get loader options for the projection and yield
    instances; anything else yields row mappings.
    """

    def __init__(self, session: Session, stmt: Any, aggregate: bool = False, yield_per: int = 1000) -> None:
        self.session = session
        self.stmt = stmt
        self.aggregate = aggregate
        self.yield_per = yield_per

    def prepare(self, projection: Mapping[str, int]) -> Any:
        stmt = self.stmt
        if self.aggregate:
            return project_aggregate(stmt, projection)
        if _selects_single_entity(stmt):
            mapper = sa_inspect(_entity_of(stmt))
            opts = loader_options(mapper, projection)
            if opts:
                stmt = stmt.options(*opts)
        return stmt

    def open_cursor(self, projection: Mapping[str, int]) -> Any:
        stmt = self.prepare(projection).execution_options(yield_per=self.yield_per)
        result = self.session.execute(stmt)
        if not self.aggregate and _selects_single_entity(self.stmt):
            return result.scalars()
        return result.mappings()


# ---------------------------------------------------------------------------
# Export surfaces
# ---------------------------------------------------------------------------

def _run(session: Session, stmt: Any, mapping: DescriptorMapping, opts: ExportOptions,
         settings: ExportSettings, aggregate: bool = False) -> Any:
    source = StatementSource(session, stmt, aggregate=aggregate, yield_per=settings.yield_per)
    return export_csv(source, mapping, sink=opts.sink, callback=opts.callback, settings=settings)


def export_query(
    session: Session,
    stmt: Any,
    options: Optional[ExportOptions] = None,
    settings: Optional[ExportSettings] = None,
    **kwargs: Any,
) -> Any:
    """Export an already built ORM query; ``fields`` partially overrides the model mapping."""
    opts = resolve_options(options, **kwargs)
    settings = settings or registry.settings
    model = _entity_of(stmt)
    if model is None:
        raise TypeError("export_query() needs a statement selecting a mapped entity")
    mapping = exportables_for(model, settings)
    if opts.fields:
        mapping = with_overrides(mapping, opts.fields, settings)
    return _run(session, stmt, mapping, opts, settings)


def export_aggregate(
    session: Session,
    stmt: Any,
    options: Optional[ExportOptions] = None,
    settings: Optional[ExportSettings] = None,
    model: Optional[type] = None,
    **kwargs: Any,
) -> Any:
    """
    Export an aggregate statement.

    ``fields`` replaces the mapping wholesale since aggregate rows need not
    look like the model; without it the model's own mapping is used.
    """
    opts = resolve_options(options, **kwargs)
    settings = settings or registry.settings
    if opts.fields:
        mapping = compile_overrides(opts.fields, settings)
    else:
        model = model or _entity_of(stmt)
        if model is None:
            raise TypeError("export_aggregate() needs fields or a mapped model")
        mapping = exportables_for(model, settings)
    return _run(session, stmt, mapping, opts, settings, aggregate=True)


def export_model(
    session: Session,
    model: type,
    options: Optional[ExportOptions] = None,
    settings: Optional[ExportSettings] = None,
    **kwargs: Any,
) -> Any:
    """Export a mapped class, building its query unless ``query`` is given."""
    opts = resolve_options(options, **kwargs)
    stmt = opts.query if opts.query is not None else build_query(model, opts.filter, opts.sort)
    logger.debug("Exporting %s", model.__name__)
    return export_query(session, stmt, options=opts, settings=settings)


class ExportableMixin:
    """
    Adds export classmethods to a declarative model::

        class User(ExportableMixin, Base):
            __tablename__ = "users"
            name: Mapped[str] = mapped_column(info={"exportable": True})

        User.export_csv(session, filter={"q": "amy"}, sink=fp)
    """

    @classmethod
    def exportable_fields(cls) -> DescriptorMapping:
        return exportables_for(cls)

    @classmethod
    def export_csv(cls, session: Session, options: Optional[ExportOptions] = None, **kwargs: Any) -> Any:
        return export_model(session, cls, options=options, **kwargs)
