"""Configurable trigger phrases (show options, back to menu, reentry choice)."""

from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path

import yaml

from app.logging_config import get_logger
from app.services.render_service import normalize_text

logger = get_logger("phrase_service")


@dataclass(frozen=True)
class PhraseSet:
    exact: frozenset = field(default_factory=frozenset)
    contains: tuple = ()

    @classmethod
    def from_config(cls, data) -> "PhraseSet":
        if not isinstance(data, dict):
            return cls()
        exact = frozenset(normalize_text(str(p)) for p in data.get("exact") or [] if str(p).strip())
        contains = tuple(normalize_text(str(p)) for p in data.get("contains") or [] if str(p).strip())
        return cls(exact=exact, contains=contains)

    def matches(self, text: str) -> bool:
        normalized = normalize_text(text)
        if not normalized:
            return False
        if normalized in self.exact:
            return True
        return any(phrase in normalized for phrase in self.contains)


@dataclass(frozen=True)
class PhraseBook:
    wants_options: PhraseSet
    back_to_main_menu: PhraseSet
    reentry_resume: PhraseSet
    reentry_escalate: PhraseSet

    def wants_options_list(self, text: str) -> bool:
        return self.wants_options.matches(text)

    def is_back_to_main_menu(self, text: str) -> bool:
        return self.back_to_main_menu.matches(text)

    def is_reentry_resume(self, text: str) -> bool:
        return self.reentry_resume.matches(text)

    def is_reentry_escalate(self, text: str) -> bool:
        return self.reentry_escalate.matches(text)


@lru_cache(maxsize=4)
def _load_yaml(path: Path) -> dict:
    if not path.exists():
        logger.warning("Phrase file not found", extra={"context": {"path": str(path)}})
        return {}
    with path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
    return data if isinstance(data, dict) else {}


def load_phrase_book(path: str) -> PhraseBook:
    data = _load_yaml(Path(path))
    return PhraseBook(
        wants_options=PhraseSet.from_config(data.get("wants_options")),
        back_to_main_menu=PhraseSet.from_config(data.get("back_to_main_menu")),
        reentry_resume=PhraseSet.from_config(data.get("reentry_resume")),
        reentry_escalate=PhraseSet.from_config(data.get("reentry_escalate")),
    )
