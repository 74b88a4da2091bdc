"""Metadata embedded in an agreement's free-text description.

The platform has no structured metadata column for agreements, so signing
and strategy metadata ride at the end of ``description``::

    <free text>__SIGNATURE_METADATA__:{"price":499,"envelopeId":"env_1"}

Everything outside this module goes through ``DescriptionMetadataAdapter``
so the storage can be swapped for real columns without touching call sites.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Protocol

from pydantic import ValidationError

from tax_engagement.domain.schemas import Agreement, StrategyMetadata

logger = logging.getLogger(__name__)

METADATA_MARKER = "__SIGNATURE_METADATA__:"

# Written by older strategist builds; read-only
LEGACY_STRATEGY_MARKER = "__STRATEGY_METADATA__:"


def _split(description: str, marker: str) -> tuple[str, str] | None:
    """Return (free_text, payload) around the first *marker*, or None."""
    index = description.find(marker)
    if index < 0:
        return None
    return description[:index], description[index + len(marker):]


def _parse_object(payload: str) -> dict | None:
    try:
        value = json.loads(payload)
    except (json.JSONDecodeError, TypeError):
        return None
    return value if isinstance(value, dict) else None


def _to_dict(metadata: StrategyMetadata | dict[str, Any]) -> dict[str, Any]:
    if isinstance(metadata, StrategyMetadata):
        return metadata.to_wire()
    return dict(metadata)


def extract(description: str | None) -> dict | None:
    """Return the embedded metadata object, or None.

    Never raises: a missing marker or unparseable payload both mean
    "no metadata".
    """
    if not description:
        return None
    for marker in (METADATA_MARKER, LEGACY_STRATEGY_MARKER):
        parts = _split(description, marker)
        if parts is not None:
            return _parse_object(parts[1])
    return None


def embed(existing: str | None, metadata: StrategyMetadata | dict[str, Any]) -> str:
    """Return *existing* with *metadata* merged into its embedded object.

    A present marker is replaced (old and new objects merged, new keys
    win); otherwise the marker and payload are appended to the free text.
    A legacy strategy marker is migrated to the current marker.
    """
    existing = existing or ""
    new_values = _to_dict(metadata)

    for marker in (METADATA_MARKER, LEGACY_STRATEGY_MARKER):
        parts = _split(existing, marker)
        if parts is not None:
            free_text, payload = parts
            merged = {**(_parse_object(payload) or {}), **new_values}
            break
    else:
        free_text, merged = existing, new_values

    return f"{free_text}{METADATA_MARKER}{json.dumps(merged, separators=(',', ':'))}"


def strip(description: str | None) -> str:
    """The free text of *description* without any embedded metadata."""
    if not description:
        return ""
    for marker in (METADATA_MARKER, LEGACY_STRATEGY_MARKER):
        parts = _split(description, marker)
        if parts is not None:
            return parts[0]
    return description


# ---------------------------------------------------------------------------
# Adapter seam
# ---------------------------------------------------------------------------


class MetadataStore(Protocol):
    """Where agreement metadata lives."""

    def read(self, agreement: Agreement) -> StrategyMetadata | None: ...

    def write(self, agreement: Agreement, metadata: StrategyMetadata | dict[str, Any]) -> str: ...

    def envelope_id_for(self, agreement: Agreement) -> str | None: ...

    def price_for(self, agreement: Agreement) -> float | None: ...


class DescriptionMetadataAdapter:
    """``MetadataStore`` backed by the agreement description field."""

    def read(self, agreement: Agreement) -> StrategyMetadata | None:
        raw = extract(agreement.description)
        if raw is None:
            return None
        try:
            return StrategyMetadata.model_validate(raw)
        except ValidationError as exc:
            logger.warning(
                "Ignoring malformed metadata on agreement %s: %s", agreement.id, exc
            )
            return None

    def write(self, agreement: Agreement, metadata: StrategyMetadata | dict[str, Any]) -> str:
        """Return the new description; persisting it is the caller's job."""
        return embed(agreement.description, metadata)

    def envelope_id_for(self, agreement: Agreement) -> str | None:
        """Dedicated field first, embedded metadata second."""
        if agreement.envelope_id:
            return agreement.envelope_id
        metadata = self.read(agreement)
        return metadata.envelope_id if metadata else None

    def price_for(self, agreement: Agreement) -> float | None:
        metadata = self.read(agreement)
        if metadata and metadata.price:
            return metadata.price
        return agreement.price or None
