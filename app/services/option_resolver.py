"""Map free user text to an option of the current step.

Order, first match wins: direct match, option-list recovery, AI-assisted
match, out-of-scope.
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Sequence

from app.logging_config import get_logger
from app.models import FlowOption
from app.services.classifier_service import OptionClassifier
from app.services.phrase_service import PhraseBook
from app.services.render_service import normalize_text

logger = get_logger("option_resolver")

_OPTION_NUMBER = re.compile(r"\b(\d{1,2})\b")


class MappingSource(str, Enum):
    DIRECT_OPTION = "DIRECT_OPTION"
    AI_MAPPED = "AI_MAPPED"
    OUT_OF_SCOPE = "OUT_OF_SCOPE"


class ResolutionKind(str, Enum):
    MATCHED = "matched"
    LIST_RECOVERY = "list_recovery"
    OUT_OF_SCOPE = "out_of_scope"


@dataclass(frozen=True)
class Resolution:
    kind: ResolutionKind
    option: Optional[FlowOption] = None
    mapping_source: Optional[MappingSource] = None
    ai_summary: Optional[str] = None

    @property
    def ai_out_of_scope(self) -> bool:
        return self.kind == ResolutionKind.OUT_OF_SCOPE


def extract_direct_option(text: str, options: Sequence[FlowOption]) -> Optional[FlowOption]:
    """Option by number, exact code, or label contained in the text."""
    normalized = normalize_text(text)
    if not normalized:
        return None

    number = _OPTION_NUMBER.search(normalized)
    if number:
        order = int(number.group(1))
        for option in options:
            if option.option_order == order:
                return option

    for option in options:
        code = normalize_text(option.option_code)
        if code and normalized == code:
            return option

    for option in options:
        label = normalize_text(option.label_text)
        if label and (normalized == label or label in normalized):
            return option

    return None


class OptionResolver:
    def __init__(self, classifier: OptionClassifier, phrases: PhraseBook):
        self.classifier = classifier
        self.phrases = phrases

    def resolve(
        self,
        text: str,
        options: Sequence[FlowOption],
        irrelevant_streak: int = 0,
        context: Optional[dict] = None,
    ) -> Resolution:
        direct = extract_direct_option(text, options)
        if direct:
            return Resolution(ResolutionKind.MATCHED, option=direct, mapping_source=MappingSource.DIRECT_OPTION)

        if irrelevant_streak > 0 and self.phrases.wants_options_list(text):
            return Resolution(ResolutionKind.LIST_RECOVERY)

        classification = self.classifier.classify(text, options, context or {})
        if classification.matched_code:
            by_code = {o.option_code: o for o in options}
            option = by_code.get(classification.matched_code)
            if option:
                return Resolution(
                    ResolutionKind.MATCHED,
                    option=option,
                    mapping_source=MappingSource.AI_MAPPED,
                    ai_summary=classification.summary,
                )
            logger.warning(
                "Classifier returned unknown option code",
                extra={"context": {"matched_code": classification.matched_code}},
            )

        return Resolution(
            ResolutionKind.OUT_OF_SCOPE,
            mapping_source=MappingSource.OUT_OF_SCOPE,
            ai_summary=classification.summary,
        )
