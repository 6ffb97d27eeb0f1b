"""Study guide section catalogue.

Sections travel under their camelCase wire names (``relatedVerses``) and are
stored in snake_case columns (``related_verses``). The order below is the
canonical presentation order used for ``section`` event indices.
"""

from typing import Any, Iterable, NamedTuple, Optional


class SectionSpec(NamedTuple):
    name: str
    column: str
    is_list: bool
    required: bool


SECTIONS: tuple[SectionSpec, ...] = (
    SectionSpec("summary", "summary", False, True),
    SectionSpec("interpretation", "interpretation", False, True),
    SectionSpec("context", "context", False, True),
    SectionSpec("relatedVerses", "related_verses", True, True),
    SectionSpec("reflectionQuestions", "reflection_questions", True, True),
    SectionSpec("prayerPoints", "prayer_points", True, True),
    SectionSpec("passage", "passage", False, False),
    SectionSpec("summaryInsights", "summary_insights", True, False),
    SectionSpec("interpretationInsights", "interpretation_insights", True, False),
    SectionSpec("reflectionAnswers", "reflection_answers", True, False),
    SectionSpec("contextQuestion", "context_question", False, False),
    SectionSpec("summaryQuestion", "summary_question", False, False),
    SectionSpec("relatedVersesQuestion", "related_verses_question", False, False),
    SectionSpec("reflectionQuestion", "reflection_question", False, False),
    SectionSpec("prayerQuestion", "prayer_question", False, False),
)

SECTIONS_BY_NAME = {spec.name: spec for spec in SECTIONS}
SECTION_ORDER = [spec.name for spec in SECTIONS]
REQUIRED_SECTIONS = [spec.name for spec in SECTIONS if spec.required]


def section_index(name: str) -> int:
    """Position of a section in the canonical order (unknown names sort last)."""
    try:
        return SECTION_ORDER.index(name)
    except ValueError:
        return len(SECTION_ORDER)


def is_valid_value(name: str, value: Any) -> bool:
    """Check the value type for a known section."""
    spec = SECTIONS_BY_NAME.get(name)
    if spec is None:
        return False
    if spec.is_list:
        return isinstance(value, list)
    return isinstance(value, str)


def missing_required(
    sections: dict[str, Any], required: Iterable[str] = tuple(REQUIRED_SECTIONS)
) -> list[str]:
    """Required sections that are absent or have the wrong type."""
    return [
        name
        for name in required
        if name not in sections or not is_valid_value(name, sections[name])
    ]


def ordered_sections(sections: dict[str, Any]) -> list[tuple[str, Any]]:
    """Known, present sections in canonical order."""
    return [
        (name, sections[name])
        for name in SECTION_ORDER
        if sections.get(name) not in (None, "", [])
    ]


def to_columns(sections: dict[str, Any]) -> dict[str, Any]:
    """Map wire names to model column names, dropping unknown or empty fields."""
    columns: dict[str, Any] = {}
    for spec in SECTIONS:
        value = sections.get(spec.name)
        if value is None:
            continue
        if not is_valid_value(spec.name, value):
            continue
        columns[spec.column] = value
    return columns


def from_record(record: Any) -> dict[str, Any]:
    """Read all present sections off a stored study guide."""
    sections: dict[str, Any] = {}
    for spec in SECTIONS:
        value: Optional[Any] = getattr(record, spec.column, None)
        if value not in (None, "", []):
            sections[spec.name] = value
    return sections
