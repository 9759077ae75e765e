"""
Dedup Key Normalisation
------------------------
An insight's dedup key is a SHA-256 over its normalised identity fields:

    lowercase -> strip punctuation -> collapse whitespace -> join -> hash

Near-identical phrasings that do not normalise equal stay distinct. A missed
merge can be fixed later with a `supersedes` link; a wrong merge cannot be
undone, so the key errs on the side of distinctness.
"""
from __future__ import annotations

import hashlib
from typing import Mapping, Optional, Sequence

from insight_pipeline.errors import InvalidInsightError
from insight_pipeline.schemas import InsightType
from insight_pipeline.utils.helpers import normalize_text

DEFAULT_IDENTITY_FIELDS: dict[InsightType, tuple[str, ...]] = {
    InsightType.USER_JOURNEY: ("persona", "workflow_type", "solution"),
    InsightType.TECHNICAL_INSIGHT: ("title", "component"),
    InsightType.STRATEGIC_THEME: ("category", "title"),
}

_SEPARATOR = "\x1f"


def identity_fields_from_config(config: Optional[Mapping]) -> dict[InsightType, tuple[str, ...]]:
    """Resolve `dedup.identity_fields` from config, falling back per type."""
    configured = (config or {}).get("identity_fields", {}) or {}
    resolved = dict(DEFAULT_IDENTITY_FIELDS)
    for type_name, fields in configured.items():
        try:
            insight_type = InsightType(type_name)
        except ValueError:
            raise InvalidInsightError(
                f"Unknown insight type in identity_fields: {type_name}", type=type_name
            ) from None
        if not fields:
            raise InvalidInsightError(
                f"identity_fields for {insight_type.value} must not be empty",
                type=insight_type.value,
            )
        resolved[insight_type] = tuple(fields)
    return resolved


def compute_dedup_key(
    insight_type: InsightType,
    fields: Mapping[str, str],
    identity_fields: Sequence[str],
) -> str:
    """Fingerprint the identity fields; every one of them must be present."""
    parts: list[str] = []
    missing: list[str] = []
    for name in identity_fields:
        value = normalize_text(str(fields.get(name, "") or ""))
        if not value:
            missing.append(name)
        parts.append(value)

    if missing:
        raise InvalidInsightError(
            f"{insight_type.value} is missing identity field(s): {', '.join(missing)}",
            type=insight_type.value,
            missing=missing,
        )

    material = _SEPARATOR.join([insight_type.value, *parts])
    return hashlib.sha256(material.encode("utf-8")).hexdigest()
