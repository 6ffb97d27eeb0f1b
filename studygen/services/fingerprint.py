"""Content-addressing fingerprint for study guide requests."""

import hashlib
import re
from dataclasses import dataclass

from studygen.db.models import InputType, StudyMode

_WHITESPACE = re.compile(r"\s+")


def normalize_input(value: str) -> str:
    """Lowercase, trim and collapse internal whitespace."""
    return _WHITESPACE.sub(" ", value.lower().strip())


def compute_fingerprint(
    input_value: str,
    input_type: InputType | str,
    language: str,
    study_mode: StudyMode | str,
) -> str:
    """
    Hash the normalized input together with type, language and mode.

    Returns:
        64-char lowercase SHA-256 hex digest
    """
    input_type = InputType(input_type).value
    study_mode = StudyMode(study_mode).value
    payload = f"{input_type}:{language}:{study_mode}:{normalize_input(input_value)}"
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class FingerprintKey:
    """Uniqueness tuple shared by the content store and the in-flight registry."""

    input_type: InputType
    input_value_hash: str
    language: str
    study_mode: StudyMode

    @classmethod
    def for_input(
        cls,
        input_value: str,
        input_type: InputType | str,
        language: str,
        study_mode: StudyMode | str,
    ) -> "FingerprintKey":
        return cls(
            input_type=InputType(input_type),
            input_value_hash=compute_fingerprint(input_value, input_type, language, study_mode),
            language=language,
            study_mode=StudyMode(study_mode),
        )

    def where(self, model) -> tuple:
        """Filter clauses selecting rows of ``model`` with this key."""
        return (
            model.input_type == self.input_type,
            model.input_value_hash == self.input_value_hash,
            model.language == self.language,
            model.study_mode == self.study_mode,
        )


@dataclass(frozen=True)
class GuideRequest:
    """A validated request for one study guide."""

    input_type: InputType
    input_value: str
    language: str = "en"
    study_mode: StudyMode = StudyMode.STANDARD
    topic_description: str | None = None

    @property
    def key(self) -> FingerprintKey:
        return FingerprintKey.for_input(
            self.input_value, self.input_type, self.language, self.study_mode
        )
