"""Read-only metric reference table: code -> human name, category, source view.

The table is built once at import time and exposed through a mapping proxy, so
every module shares the same immutable lookup.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from types import MappingProxyType

CODE_PATTERN = re.compile(r"[A-Z]{2}\d{4}")

UNKNOWN_METRIC = "Unknown metric"
DATA_NOT_AVAILABLE = "Data not available"


@dataclass(frozen=True, slots=True)
class MetricDefinition:
    code: str
    human_name: str
    category: str
    view: str


_COMPETENCY = "competency"
_CAPABILITY = "capability"
_CHARACTER = "character"
_COLLABORATION = "collaboration"

_DEFINITIONS = (
    MetricDefinition("CO0001", "Work experience with the company", "Experience", _COMPETENCY),
    MetricDefinition("CO0002", "Current rank experience", "Experience", _COMPETENCY),
    MetricDefinition("CO0003", "Time in current ship type", "Experience", _COMPETENCY),
    MetricDefinition("CO0004", "Service on OTA ships in the last 5 years", "Experience", _COMPETENCY),
    MetricDefinition("CO0005", "New vessel takeover experience", "Experience", _COMPETENCY),
    MetricDefinition("CO0006", "Second-hand vessel takeover experience", "Experience", _COMPETENCY),
    MetricDefinition("CO0007", "Onboard training and courses", "Training", _COMPETENCY),
    MetricDefinition("CO0008", "Dry dock experience", "Experience", _COMPETENCY),
    MetricDefinition("CO0009", "Computer-based training score", "Assessment", _COMPETENCY),
    MetricDefinition("CO0010", "Training matrix course count", "Training", _COMPETENCY),
    MetricDefinition("CO0011", "Superior certificate status", "Certification", _COMPETENCY),
    MetricDefinition("CP0001", "Successful voyage performance", "Performance", _CAPABILITY),
    MetricDefinition("CP0002", "Days since last failure", "Performance", _CAPABILITY),
    MetricDefinition("CP0003", "Average appraisal score", "Assessment", _CAPABILITY),
    MetricDefinition("CP0004", "Psychometric score", "Assessment", _CAPABILITY),
    MetricDefinition("CP0005", "Sign-offs for medical reasons (3 years)", "Medical", _CAPABILITY),
    MetricDefinition("CH0001", "Successful contract completion", "Contract", _CHARACTER),
    MetricDefinition("CH0002", "Off-hire days in the last 3 years", "Contract", _CHARACTER),
    MetricDefinition("CH0003", "Sign-on delays", "Contract", _CHARACTER),
    MetricDefinition("CH0004", "Leadership score", "Behavioral", _CHARACTER),
    MetricDefinition("CH0005", "Management score", "Behavioral", _CHARACTER),
    MetricDefinition("CH0006", "Teamwork score", "Behavioral", _CHARACTER),
    MetricDefinition("CH0007", "Knowledge score", "Behavioral", _CHARACTER),
    MetricDefinition("CL0001", "Negative inspections (3 years)", "Inspection", _COLLABORATION),
    MetricDefinition("CL0002", "Number of detentions (3 years)", "Inspection", _COLLABORATION),
    MetricDefinition("CL0003", "Positive inspections (3 years)", "Inspection", _COLLABORATION),
    MetricDefinition("CL0004", "Vetting awards (3 years)", "Recognition", _COLLABORATION),
    MetricDefinition("CL0005", "Major incidents (3 years)", "Incident", _COLLABORATION),
    MetricDefinition("CL0006", "Shore communication score", "Communication", _COLLABORATION),
    MetricDefinition("CL0007", "Ship communication score", "Communication", _COLLABORATION),
)

METRICS: MappingProxyType[str, MetricDefinition] = MappingProxyType(
    {definition.code: definition for definition in _DEFINITIONS}
)

VIEWS: tuple[str, ...] = (_COMPETENCY, _CAPABILITY, _CHARACTER, _COLLABORATION)


def lookup(code: str) -> MetricDefinition | None:
    return METRICS.get(code)


def human_name(code: str) -> str:
    definition = METRICS.get(code)
    return definition.human_name if definition else UNKNOWN_METRIC


def category(code: str) -> str:
    definition = METRICS.get(code)
    return definition.category if definition else "Unknown"


def codes_for_view(view: str) -> list[str]:
    return [definition.code for definition in _DEFINITIONS if definition.view == view]


def find_codes(text: str) -> list[str]:
    """Return every code token in ``text``, deduplicated in order of appearance."""

    seen: list[str] = []
    for code in CODE_PATTERN.findall(text or ""):
        if code not in seen:
            seen.append(code)
    return seen


def interpret_score(score: float | None) -> str:
    if score is None:
        return DATA_NOT_AVAILABLE
    if score >= 80:
        return "Excellent performance"
    if score >= 60:
        return "Good performance"
    if score >= 40:
        return "Satisfactory performance"
    if score >= 20:
        return "Needs attention"
    return "Critical - requires immediate action"


def describe(code: str) -> str:
    """``"<human name> (<code>)"``, the form used in prompts and traceability."""

    return f"{human_name(code)} ({code})"
