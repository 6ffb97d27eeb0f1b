"""Pass planning and prompt text for study guide generation."""

import json
from dataclasses import dataclass
from typing import Any, Optional

from studygen.db.models import InputType, StudyMode
from studygen.services.fingerprint import GuideRequest
from studygen.services.sections import SECTIONS_BY_NAME

# Languages whose long-form output is split across passes to stay under output limits
MULTI_PASS_LANGUAGES = {"hi", "ml"}
MULTI_PASS_MODES = {StudyMode.STANDARD, StudyMode.DEEP, StudyMode.LECTIO}

INTERPRETATION_PART_PREFIX = "interpretationPart"
ALTAR_CALL = "altarCall"

LIST_FIELDS = ("relatedVerses", "reflectionQuestions", "prayerPoints")
REFLECTION_FIELDS = (
    "summaryInsights",
    "interpretationInsights",
    "reflectionAnswers",
    "contextQuestion",
    "summaryQuestion",
    "relatedVersesQuestion",
    "reflectionQuestion",
    "prayerQuestion",
)
FIRST_PASS_FIELDS = ("summary", "context", "passage", f"{INTERPRETATION_PART_PREFIX}1")

LANGUAGE_NAMES = {"en": "English", "hi": "Hindi", "ml": "Malayalam"}

MODE_GUIDANCE = {
    StudyMode.QUICK: "a short study that can be read in about three minutes",
    StudyMode.STANDARD: "a balanced study with clear explanation and application",
    StudyMode.DEEP: "an in-depth study with word studies and historical background",
    StudyMode.LECTIO: "a Lectio Divina reading with slow, meditative reflection",
    StudyMode.SERMON: "a full sermon outline with a closing altar call",
}

FIELD_GUIDANCE = {
    "summary": "string, 2-4 sentence overview",
    "context": "string, historical and literary context",
    "passage": "string, the key passage text (scripture inputs only)",
    "interpretation": "string, the main explanation",
    "relatedVerses": "array of 3-6 verse references with a short note each",
    "reflectionQuestions": "array of 3-5 questions",
    "prayerPoints": "array of 3-5 prayer points",
    "summaryInsights": "array of short insights about the summary",
    "interpretationInsights": "array of short insights about the interpretation",
    "reflectionAnswers": "array of sample answers to the reflection questions",
    "contextQuestion": "string, one question about the context",
    "summaryQuestion": "string, one question about the summary",
    "relatedVersesQuestion": "string, one question about the related verses",
    "reflectionQuestion": "string, one question inviting reflection",
    "prayerQuestion": "string, one question leading into prayer",
    "altarCall": "string, a closing invitation",
}


@dataclass(frozen=True)
class GenerationPass:
    number: int
    total: int
    fields: tuple[str, ...]

    @property
    def is_last(self) -> bool:
        return self.number == self.total


def interpretation_part(number: int) -> str:
    return f"{INTERPRETATION_PART_PREFIX}{number}"


def part_number(name: str) -> Optional[int]:
    """Number of an ``interpretationPartN`` field, None for any other name."""
    suffix = name[len(INTERPRETATION_PART_PREFIX):]
    if name.startswith(INTERPRETATION_PART_PREFIX) and suffix.isdigit():
        return int(suffix)
    return None


def section_name(field: str) -> str:
    """Section a generated field is presented as."""
    if part_number(field) is not None or field == ALTAR_CALL:
        return "interpretation"
    return field


def plan_passes(study_mode: StudyMode, language: str) -> list[GenerationPass]:
    """
    Split generation into passes.

    Sermons always take four passes. Standard, deep and lectio studies in
    Hindi or Malayalam take two. Everything else is a single pass.
    """
    if study_mode == StudyMode.SERMON:
        return [
            GenerationPass(1, 4, FIRST_PASS_FIELDS),
            GenerationPass(2, 4, (interpretation_part(2),)),
            GenerationPass(3, 4, (interpretation_part(3),)),
            GenerationPass(
                4, 4, (interpretation_part(4), ALTAR_CALL) + LIST_FIELDS + REFLECTION_FIELDS
            ),
        ]

    if study_mode in MULTI_PASS_MODES and language in MULTI_PASS_LANGUAGES:
        return [
            GenerationPass(1, 2, FIRST_PASS_FIELDS),
            GenerationPass(2, 2, (interpretation_part(2),) + LIST_FIELDS + REFLECTION_FIELDS),
        ]

    return [
        GenerationPass(
            1,
            1,
            ("summary", "context", "passage", "interpretation") + LIST_FIELDS + REFLECTION_FIELDS,
        )
    ]


def expected_sections(study_mode: StudyMode, language: str) -> int:
    """Number of distinct sections the pass plan asks the model for."""
    names = {
        section_name(field)
        for generation_pass in plan_passes(study_mode, language)
        for field in generation_pass.fields
    }
    return len(names & SECTIONS_BY_NAME.keys())


def build_system_prompt(request: GuideRequest) -> str:
    language = LANGUAGE_NAMES.get(request.language, "English")
    return (
        "You are a careful Bible teacher writing study guides for everyday readers. "
        f"Write {MODE_GUIDANCE[request.study_mode]}. "
        f"Write every value in {language}. "
        "Respond with a single JSON object and nothing else."
    )


def build_prompt(
    request: GuideRequest, generation_pass: GenerationPass, previous: dict[str, Any]
) -> str:
    """User prompt for one pass, carrying earlier output so later passes stay coherent."""
    if request.input_type == InputType.SCRIPTURE:
        subject = f"the scripture passage {request.input_value}"
    elif request.input_type == InputType.QUESTION:
        subject = f"the question: {request.input_value}"
    else:
        subject = f"the topic: {request.input_value}"

    lines = [f"Create a study guide on {subject}."]
    if request.topic_description:
        lines.append(f"Topic description: {request.topic_description}")

    if generation_pass.total > 1:
        lines.append(f"This is part {generation_pass.number} of {generation_pass.total}.")
        if previous:
            lines.append("Earlier parts, for continuity (do not repeat them):")
            lines.append(json.dumps(previous, ensure_ascii=False))

    lines.append("Return a JSON object with exactly these fields, in this order:")
    for name in generation_pass.fields:
        guidance = FIELD_GUIDANCE.get(name)
        if guidance is None and part_number(name) is not None:
            guidance = (
                f"string, part {part_number(name)} of "
                f"{generation_pass.total} of the interpretation"
            )
        lines.append(f'- "{name}": {guidance}')
    return "\n".join(lines)
