"""Helpers for logging API traffic without leaking credentials."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from .constants import REDACTED, SENSITIVE_FIELDS

__all__ = ["is_sensitive", "sanitize"]


def is_sensitive(name: str) -> bool:
    """Return whether a field name looks like it holds a credential.

    Parameters
    ----------
    name
        Field, header, or parameter name.
    """
    lowered = name.lower()
    return any(field in lowered for field in SENSITIVE_FIELDS)


def sanitize(data: Any) -> Any:
    """Redact credentials from data before it is logged.

    Mappings have the values of sensitive keys replaced, recursively. Bare
    strings that mention a sensitive word are replaced entirely, since there
    is no structure to tell the credential apart from the rest.

    Parameters
    ----------
    data
        Request parameters, body, headers, or response body.

    Returns
    -------
    typing.Any
        Copy of the data safe to pass to a structlog logger. The input is not
        modified.
    """
    if isinstance(data, str):
        return REDACTED if is_sensitive(data) else data
    if isinstance(data, Mapping):
        return {
            k: REDACTED if is_sensitive(str(k)) else sanitize(v)
            for k, v in data.items()
        }
    if isinstance(data, list | tuple):
        return [sanitize(item) for item in data]
    return data
