from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from .models import SEVERITY_RANK, RedFlag
from .responses import item_name, list_field, text_field


@dataclass(frozen=True)
class KeywordRule:
    phrase: str
    category: str
    severity: str


_RECOMMENDATIONS = {
    "cardiac": "Urgent cardiac evaluation recommended.",
    "cardiovascular": "Assess for cardiovascular cause before the visit.",
    "respiratory": "Assess respiratory status promptly.",
    "neurological": "Consider urgent neurological assessment.",
    "gastrointestinal": "Evaluate for gastrointestinal bleeding.",
    "urological": "Evaluate for urinary tract pathology.",
    "psychiatric": "Immediate mental health safety assessment recommended.",
    "toxicology": "Assess for toxic ingestion immediately.",
    "general": "Immediate clinical assessment recommended.",
    "allergy": "Review allergy history and emergency plan.",
    "medication": "Review dosing, monitoring and interactions.",
}


class RedFlagScanner:
    """Deterministic scan of intake content for clinically urgent findings.

    Every rule is evaluated on every call; a phrase never suppresses another
    phrase, even when one contains the other.
    """

    KEYWORD_RULES: tuple[KeywordRule, ...] = (
        KeywordRule("chest pain", "cardiac", "high"),
        KeywordRule("difficulty breathing", "respiratory", "high"),
        KeywordRule("shortness of breath", "respiratory", "high"),
        KeywordRule("severe headache", "neurological", "high"),
        KeywordRule("worst headache", "neurological", "high"),
        KeywordRule("sudden weakness", "neurological", "high"),
        KeywordRule("numbness", "neurological", "medium"),
        KeywordRule("blood in stool", "gastrointestinal", "high"),
        KeywordRule("blood in urine", "urological", "high"),
        KeywordRule("suicidal", "psychiatric", "high"),
        KeywordRule("self-harm", "psychiatric", "high"),
        KeywordRule("overdose", "toxicology", "high"),
        KeywordRule("unconscious", "general", "high"),
        KeywordRule("fainting", "cardiovascular", "high"),
        KeywordRule("allergic reaction", "allergy", "high"),
        KeywordRule("anaphylaxis", "allergy", "high"),
        KeywordRule("hopeless", "psychiatric", "medium"),
    )
    HIGH_RISK_MEDICATIONS: tuple[str, ...] = ("warfarin", "insulin", "methotrexate", "lithium", "digoxin")
    ALLERGY_COUNT_THRESHOLD = 3

    def scan(self, responses: dict[str, Any]) -> list[RedFlag]:
        flags: list[RedFlag] = []
        flags.extend(self._scan_chief_complaint(text_field(responses, "chief_complaint")))
        flags.extend(self._scan_medications(list_field(responses, "medications", "current_medications")))
        flags.extend(self._scan_allergies(list_field(responses, "allergies")))

        unique: dict[tuple[str, str], RedFlag] = {}
        for flag in flags:
            unique.setdefault(flag.identity, flag)
        return list(unique.values())

    def _scan_chief_complaint(self, chief_complaint: str) -> list[RedFlag]:
        lowered = chief_complaint.lower()
        if not lowered:
            return []
        return [
            RedFlag(
                flag=f'Patient reported: "{rule.phrase}"',
                severity=rule.severity,
                source="keyword",
                category=rule.category,
                details=f"Chief complaint mentions {rule.phrase} ({rule.category}).",
                recommendation=_RECOMMENDATIONS.get(rule.category),
            )
            for rule in self.KEYWORD_RULES
            if rule.phrase in lowered
        ]

    def _scan_medications(self, medications: list[Any]) -> list[RedFlag]:
        flags: list[RedFlag] = []
        for med in medications:
            name = item_name(med, "name", "medication").lower()
            if not name:
                continue
            matched = [drug for drug in self.HIGH_RISK_MEDICATIONS if drug in name]
            if not matched:
                continue
            flags.append(
                RedFlag(
                    flag=f"High-risk medication: {name}",
                    severity="medium",
                    source="keyword",
                    category="medication",
                    details=f"Narrow therapeutic index or high-alert drug ({', '.join(matched)}).",
                    recommendation=_RECOMMENDATIONS["medication"],
                )
            )
        return flags

    def _scan_allergies(self, allergies: list[Any]) -> list[RedFlag]:
        if len(allergies) <= self.ALLERGY_COUNT_THRESHOLD:
            return []
        return [
            RedFlag(
                flag=f"Multiple allergies reported ({len(allergies)})",
                severity="low",
                source="keyword",
                category="allergy",
                details="Allergy count exceeds the review threshold.",
                recommendation=_RECOMMENDATIONS["allergy"],
            )
        ]


def sort_by_severity(flags: list[RedFlag]) -> list[RedFlag]:
    return sorted(flags, key=lambda flag: SEVERITY_RANK.get(flag.severity, len(SEVERITY_RANK)))
