"""Input shape validation and prompt-injection screening."""

import logging
import re
from typing import Optional

from studygen.config import Settings, get_settings
from studygen.db.models import InputType
from studygen.errors import InputValidationError, SecurityViolationError
from studygen.services.fingerprint import GuideRequest

logger = logging.getLogger(__name__)

SUSPICIOUS_PATTERNS = [
    # Prompt injection
    re.compile(r"ignore\s+(previous|above|all)\s+(instructions?|prompts?)", re.IGNORECASE),
    re.compile(r"forget\s+(everything|all|previous)", re.IGNORECASE),
    re.compile(r"new\s+(instructions?|prompts?|rules?)", re.IGNORECASE),
    re.compile(r"system\s*:", re.IGNORECASE),
    re.compile(r"assistant\s*:", re.IGNORECASE),
    re.compile(r"\[/?INST\]", re.IGNORECASE),
    re.compile(r"<\|im_(start|end)\|>", re.IGNORECASE),
    # Code and markup injection
    re.compile(r"<script>|javascript:|<iframe|<object|<embed", re.IGNORECASE),
    re.compile(r"eval\s*\(", re.IGNORECASE),
    re.compile(r"<[^>]*on\w+\s*=", re.IGNORECASE),
    # SQL injection
    re.compile(r"union\s+select|drop\s+table|delete\s+from", re.IGNORECASE),
]

# "John 3:16", "1 Corinthians 13", "യോഹന്നാൻ 3:16-18"
SCRIPTURE_REFERENCE = re.compile(r"^(?:[1-3]\s*)?[^\d:]+?\s*\d{1,3}(?:\s*:\s*\d{1,3}(?:\s*-\s*\d{1,3})?)?$")
REPEATED_PATTERN = re.compile(r"(.{3,})\1{2,}")


class InputValidator:
    """Validates a study guide request before any lookup or charge."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    def max_length(self, input_type: InputType) -> int:
        return {
            InputType.SCRIPTURE: self.settings.max_scripture_length,
            InputType.TOPIC: self.settings.max_topic_length,
            InputType.QUESTION: self.settings.max_question_length,
        }[input_type]

    def validate(self, request: GuideRequest) -> None:
        """
        Raise InputValidationError for malformed input and
        SecurityViolationError for input that fails screening.
        """
        value = request.input_value.strip()
        if not value:
            raise InputValidationError("input_value cannot be empty")

        limit = self.max_length(request.input_type)
        if len(value) > limit:
            raise InputValidationError(
                f"{request.input_type.value} input exceeds maximum length of {limit} characters"
            )

        description = request.topic_description or ""
        if len(description) > self.settings.max_description_length:
            raise InputValidationError(
                f"topic_description exceeds maximum length of "
                f"{self.settings.max_description_length} characters"
            )

        if request.language not in self.settings.language_names:
            raise InputValidationError(f"Unsupported language: {request.language}")

        for text in (value, description):
            for pattern in SUSPICIOUS_PATTERNS:
                if pattern.search(text):
                    logger.warning(f"Blocked input matching /{pattern.pattern}/")
                    raise SecurityViolationError("Input contains disallowed content")
            if REPEATED_PATTERN.search(text) and len(text) > 30:
                logger.warning("Blocked input with repeated patterns")
                raise SecurityViolationError("Input flagged as high risk")

        if request.input_type == InputType.SCRIPTURE and not SCRIPTURE_REFERENCE.match(value):
            raise InputValidationError(
                "Invalid scripture reference. Use a format like 'John 3:16' or 'Psalm 23'"
            )
