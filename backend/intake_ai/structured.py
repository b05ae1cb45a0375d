"""Deterministic summary fields derived from the intake responses.

The model's markdown goes into Summary.content; everything here is built
from what the patient actually submitted so it never depends on model output.
"""

from __future__ import annotations

from typing import Any

from intake_core.models import Medication
from intake_core.responses import field_value, flatten_text, item_name, item_text, list_field, mapping_field, text_field

SYSTEMS_REVIEW_KEYS = (
    "general",
    "cardiovascular",
    "respiratory",
    "gastrointestinal",
    "neurological",
    "musculoskeletal",
    "psychiatric",
    "integumentary",
    "endocrine",
)
LIFESTYLE_KEYS = ("smoking", "alcohol", "exercise", "diet", "sleep", "stress")

_SYSTEM_ALIASES = {
    "integumentary": ("skin",),
    "gastrointestinal": ("gi",),
    "cardiovascular": ("cardiac",),
    "neurological": ("neuro",),
    "psychiatric": ("mental_health",),
}
_HISTORY_SECTIONS = (
    ("Medical history", "medical_history"),
    ("Surgical history", "surgical_history"),
    ("Family history", "family_history"),
)


def _lookup(section: dict[str, Any], key: str, aliases: tuple[str, ...] = ()) -> str | None:
    text = flatten_text(field_value(section, key, *aliases))
    return text or None


def extract_medications(responses: dict[str, Any]) -> list[Medication]:
    medications = []
    for item in list_field(responses, "medications", "current_medications"):
        name = item_name(item, "name", "medication")
        if not name:
            continue
        medications.append(
            Medication(
                name=name,
                dosage=item_text(item, "dosage"),
                frequency=item_text(item, "frequency"),
                purpose=item_text(item, "purpose"),
                is_verified=False,
            )
        )
    return medications


def extract_systems_review(responses: dict[str, Any]) -> dict[str, str | None]:
    section = mapping_field(responses, "review_of_systems", "systems_review")
    return {key: _lookup(section, key, _SYSTEM_ALIASES.get(key, ())) for key in SYSTEMS_REVIEW_KEYS}


def extract_lifestyle(responses: dict[str, Any]) -> dict[str, str | None]:
    # Forms put these either under social history or at the top level.
    section = mapping_field(responses, "social_history", "lifestyle")
    return {key: _lookup(section, key) or _lookup(responses, key) for key in LIFESTYLE_KEYS}


def extract_relevant_history(responses: dict[str, Any]) -> str:
    parts = []
    for label, key in _HISTORY_SECTIONS:
        text = text_field(responses, key)
        if text:
            parts.append(f"{label}: {text}")
    return "\n".join(parts) or "None reported"


def extract_chief_complaint(responses: dict[str, Any]) -> str:
    return text_field(responses, "chief_complaint") or "Not provided"


def structured_fields(responses: dict[str, Any]) -> dict[str, Any]:
    return {
        "chief_complaint": extract_chief_complaint(responses),
        "medications": tuple(extract_medications(responses)),
        "systems_review": extract_systems_review(responses),
        "relevant_history": extract_relevant_history(responses),
        "lifestyle": extract_lifestyle(responses),
    }
