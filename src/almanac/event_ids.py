"""Unified event identifiers.

Every event surfaced by the unified layer carries an id of the form
``<origin>_<originalId>``.  Parsing yields a tagged reference so that routing
matches on the reference type, never on string prefixes::

    match parse_event_id(event_id):
        case LocalRef(id=local_id):
            ...
        case ExternalRef(id=external_id):
            ...
"""

from __future__ import annotations

from dataclasses import dataclass

from almanac.errors import InvalidEventIdError
from almanac.models import EventOrigin

_LOCAL_PREFIX = f"{EventOrigin.LOCAL}_"
_EXTERNAL_PREFIX = f"{EventOrigin.EXTERNAL}_"


@dataclass(frozen=True)
class LocalRef:
    id: int


@dataclass(frozen=True)
class ExternalRef:
    id: str


EventRef = LocalRef | ExternalRef


def parse_event_id(event_id: str) -> EventRef:
    """Parse a unified id into a :data:`EventRef`.

    Raises
    ------
    InvalidEventIdError
        When the id has no recognized prefix, a non-numeric or non-positive
        local id, or an empty external id.
    """
    if not isinstance(event_id, str):
        raise InvalidEventIdError(str(event_id))

    if event_id.startswith(_LOCAL_PREFIX):
        raw = event_id[len(_LOCAL_PREFIX) :]
        if not raw.isascii() or not raw.isdigit():
            raise InvalidEventIdError(event_id)
        local_id = int(raw)
        if local_id <= 0:
            raise InvalidEventIdError(event_id)
        return LocalRef(local_id)

    if event_id.startswith(_EXTERNAL_PREFIX):
        raw = event_id[len(_EXTERNAL_PREFIX) :]
        if not raw:
            raise InvalidEventIdError(event_id)
        return ExternalRef(raw)

    raise InvalidEventIdError(event_id)


def format_event_id(ref: EventRef) -> str:
    match ref:
        case LocalRef(id=local_id):
            return f"{_LOCAL_PREFIX}{local_id}"
        case ExternalRef(id=external_id):
            return f"{_EXTERNAL_PREFIX}{external_id}"
    raise TypeError(f"Unsupported event reference: {ref!r}")
