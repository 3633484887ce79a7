from .types import MISSING, Columns, DescriptorMapping, ExportDescriptor, FieldNode
from .config import ExportSettings
from .compiler import (
    ExportableRegistry,
    compile_exportables,
    compile_overrides,
    exportables_for,
    load_overrides,
    registry,
    with_overrides,
)
from .pipeline import ExportAborted, ExportOptions, ExportStream, export_csv, export_records
from .sqla import ExportableMixin, export_aggregate, export_model, export_query

__all__ = [
    "MISSING",
    "Columns",
    "DescriptorMapping",
    "ExportDescriptor",
    "FieldNode",
    "ExportSettings",
    "ExportableRegistry",
    "compile_exportables",
    "compile_overrides",
    "exportables_for",
    "load_overrides",
    "registry",
    "with_overrides",
    "ExportAborted",
    "ExportOptions",
    "ExportStream",
    "export_csv",
    "export_records",
    "ExportableMixin",
    "export_aggregate",
    "export_model",
    "export_query",
]
