from __future__ import annotations

import os
from dataclasses import dataclass, replace
from typing import Any, Mapping, Optional


ENV_NUMBER_MISSING = "NUMBER_MISSING_VALUE"
ENV_STRING_MISSING = "STRING_MISSING_VALUE"
ENV_COMMA_REPLACEMENT = "EXPORT_COMMA_REPLACEMENT"
ENV_YIELD_PER = "EXPORT_YIELD_PER"


def _to_number(raw: str):
    try:
        return int(raw)
    except ValueError:
        return float(raw)


@dataclass(frozen=True)
class ExportSettings:
    """
    Explicit configuration for compiling and running exports.

    number_missing_value / string_missing_value
        fallbacks substituted for absent numeric / string fields.
    comma_replacement
        replacement for literal commas in string cells; None leaves commas
        alone and relies on CSV quoting.
    falsy_format_fallback
        legacy rule: any falsy formatter result falls back to the raw value
        (otherwise only None means "no change").
    yield_per
        batch size hint for database cursors.
    """

    number_missing_value: Any = 0
    string_missing_value: Any = "NA"
    comma_replacement: Optional[str] = ";"
    falsy_format_fallback: bool = False
    yield_per: int = 1000

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "ExportSettings":
        env = os.environ if environ is None else environ
        kwargs = {}
        if env.get(ENV_NUMBER_MISSING) not in (None, ""):
            kwargs["number_missing_value"] = _to_number(env[ENV_NUMBER_MISSING])
        if ENV_STRING_MISSING in env:
            kwargs["string_missing_value"] = env[ENV_STRING_MISSING]
        if ENV_COMMA_REPLACEMENT in env:
            # empty value switches substitution off
            kwargs["comma_replacement"] = env[ENV_COMMA_REPLACEMENT] or None
        if env.get(ENV_YIELD_PER) not in (None, ""):
            kwargs["yield_per"] = int(env[ENV_YIELD_PER])
        return cls(**kwargs)

    def evolve(self, **changes: Any) -> "ExportSettings":
        return replace(self, **changes)


DEFAULT_SETTINGS = ExportSettings()
