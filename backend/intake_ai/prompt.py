from __future__ import annotations

import re
from typing import Any

from intake_core.models import Intake
from intake_core.responses import field_value, flatten_text, item_name, item_text, list_field, mapping_field, text_field

RED_FLAG_MARKER = "[RED FLAG]"
SUMMARY_SECTIONS = ("Summary", "Key Findings", "Red Flags", "Medications Review", "Considerations")

SECTION_CHAR_LIMIT = 1500
PROMPT_CHAR_LIMIT = 12000

# Direct identifiers never leave the service in a prompt.
_IDENTIFYING_FIELDS = {
    "first_name",
    "last_name",
    "name",
    "phone",
    "email",
    "address",
    "emergency_contact",
    "emergency_phone",
    "date_of_birth",
    "dob",
    "ssn",
}
_CAMEL_SPLIT_RE = re.compile(r"(?<!^)(?=[A-Z])")


def _snake(key: str) -> str:
    return _CAMEL_SPLIT_RE.sub("_", key).lower()


def _label(key: str) -> str:
    return _snake(key).replace("_", " ").capitalize()


def _bounded(text: str, limit: int = SECTION_CHAR_LIMIT) -> str:
    text = text.strip()
    if len(text) <= limit:
        return text
    return text[: limit - 15].rstrip() + " ...[truncated]"


def _format_mapping(data: dict[str, Any], *, empty: str = "Not provided") -> str:
    lines = []
    for key, value in data.items():
        if _snake(key) in _IDENTIFYING_FIELDS:
            continue
        text = flatten_text(value)
        if text:
            lines.append(f"- {_label(key)}: {text}")
    return "\n".join(lines) or empty


def _format_free(responses: dict[str, Any], *names: str) -> str:
    value = field_value(responses, *names)
    if isinstance(value, dict):
        return _format_mapping(value)
    return flatten_text(value) or "Not provided"


def format_medications(medications: list[Any]) -> str:
    if not medications:
        return "None reported"
    lines = []
    for med in medications:
        name = item_name(med, "name", "medication") or "Unknown"
        dosage = item_text(med, "dosage")
        frequency = item_text(med, "frequency")
        line = f"- {name}"
        if dosage:
            line += f" ({dosage})"
        if frequency:
            line += f" - {frequency}"
        lines.append(line)
    return "\n".join(lines)


def format_allergies(allergies: list[Any]) -> str:
    if not allergies:
        return "No known allergies (NKDA)"
    lines = []
    for allergy in allergies:
        name = item_name(allergy, "allergen", "name", "substance") or "Unknown"
        reaction = item_text(allergy, "reaction")
        lines.append(f"- {name} -> {reaction}" if reaction else f"- {name}")
    return "\n".join(lines)


def build_summary_prompt(intake: Intake) -> str:
    responses = intake.responses
    sections = [
        ("Chief Complaint", text_field(responses, "chief_complaint") or "Not provided"),
        ("Demographics", _format_mapping(mapping_field(responses, "demographics"))),
        ("Medical History", _format_free(responses, "medical_history")),
        ("Surgical History", _format_free(responses, "surgical_history")),
        ("Family History", _format_free(responses, "family_history")),
        ("Current Medications", format_medications(list_field(responses, "medications", "current_medications"))),
        ("Allergies", format_allergies(list_field(responses, "allergies"))),
        ("Social History", _format_free(responses, "social_history")),
        ("Review of Systems", _format_free(responses, "review_of_systems")),
        ("Additional Concerns", _format_free(responses, "additional_concerns")),
    ]
    intake_block = "\n\n".join(f"**{title}:**\n{_bounded(body)}" for title, body in sections)
    intake_block = _bounded(intake_block, PROMPT_CHAR_LIMIT)
    section_list = "\n".join(f"{index}. **{name}**" for index, name in enumerate(SUMMARY_SECTIONS, start=1))

    return (
        "You are a medical AI assistant helping healthcare providers review patient intake forms. "
        "Generate a concise, professional clinical summary based on the following patient intake data.\n\n"
        "**IMPORTANT GUIDELINES:**\n"
        "1. Use clear, professional medical terminology\n"
        f"2. Put every concerning finding on its own line starting with {RED_FLAG_MARKER}\n"
        "3. Be concise but thorough\n"
        "4. Format using markdown with the section headings listed below, in that order\n"
        "5. Never make or suggest a diagnosis - only summarize and highlight findings\n"
        "6. Do not invent information that is not in the intake data\n\n"
        "**PATIENT INTAKE DATA:**\n\n"
        f"{intake_block}\n\n"
        "---\n\n"
        "Generate the clinical summary with exactly these sections:\n"
        f"{section_list}\n\n"
        f'If there are no concerning findings, the Red Flags section must say "No immediate red flags identified".'
    )
