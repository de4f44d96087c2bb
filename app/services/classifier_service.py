"""AI fallback that maps free text to one option of the current step."""

import json
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, Sequence

from app.config import Settings
from app.logging_config import get_logger
from app.models import FlowOption
from app.services.llm import LLMProvider, OpenAIProvider

logger = get_logger("classifier_service")

CLASSIFY_PROMPT = """Eres un clasificador para el asistente de WhatsApp de {client_name}.
No converses. No inventes opciones.
Pregunta mostrada al usuario:
{step_prompt}

Opciones válidas (código: etiqueta):
{options}

Mensaje del usuario: {message}

Devuelve solo JSON válido con estas llaves exactas:
matched_code (uno de los códigos o null), out_of_scope (true/false), summary (máximo 20 palabras o null)."""


@dataclass(frozen=True)
class ClassificationResult:
    matched_code: Optional[str] = None
    out_of_scope: bool = True
    summary: Optional[str] = None


NO_MATCH = ClassificationResult()


class OptionClassifier(ABC):
    @abstractmethod
    def classify(self, text: str, options: Sequence[FlowOption], context: dict) -> ClassificationResult:
        """Return at most one matched option code. Never raises."""
        pass


class NullClassifier(OptionClassifier):
    """Used when no AI provider is configured."""

    def classify(self, text: str, options: Sequence[FlowOption], context: dict) -> ClassificationResult:
        return NO_MATCH


class LLMOptionClassifier(OptionClassifier):
    def __init__(self, provider: LLMProvider, model: Optional[str] = None, timeout_seconds: float = 8.0):
        self.provider = provider
        self.model = model
        self.timeout_seconds = timeout_seconds

    def classify(self, text: str, options: Sequence[FlowOption], context: dict) -> ClassificationResult:
        if not options or not (text or "").strip():
            return NO_MATCH

        prompt = CLASSIFY_PROMPT.format(
            client_name=context.get("client_name") or "la empresa",
            step_prompt=context.get("step_prompt") or "",
            options="\n".join(f"- {o.option_code}: {o.label_text}" for o in options),
            message=text,
        )
        started = time.monotonic()
        try:
            response = self.provider.generate(
                [
                    {"role": "system", "content": "Clasifica el mensaje. Solo JSON válido."},
                    {"role": "user", "content": prompt},
                ],
                model=self.model,
                temperature=0.0,
                max_tokens=150,
                json_mode=True,
                timeout_seconds=self.timeout_seconds,
            )
            result = parse_classification(response.content)
        except Exception as e:
            logger.warning(f"Option classification failed: {e}")
            return NO_MATCH

        logger.info(
            "Timing",
            extra={
                "context": {
                    "stage": "classifier_llm_ms",
                    "elapsed_ms": round((time.monotonic() - started) * 1000, 2),
                    "matched_code": result.matched_code,
                }
            },
        )
        return result


def parse_classification(content: str) -> ClassificationResult:
    """Parse the model's JSON answer; anything unusable is a no-match."""
    try:
        data = json.loads(content or "")
    except ValueError:
        return NO_MATCH
    if not isinstance(data, dict):
        return NO_MATCH

    code = data.get("matched_code")
    matched_code = str(code).strip() if code not in (None, "") else None
    summary = data.get("summary")
    return ClassificationResult(
        matched_code=matched_code or None,
        out_of_scope=bool(data.get("out_of_scope", matched_code is None)),
        summary=str(summary)[:280] if summary else None,
    )


def build_classifier(settings: Settings) -> OptionClassifier:
    if not settings.openai_api_key:
        return NullClassifier()
    return LLMOptionClassifier(
        OpenAIProvider(settings.openai_api_key, default_model=settings.openai_model),
        model=settings.openai_model,
        timeout_seconds=settings.classifier_timeout_seconds,
    )
