"""Text normalization, step/option rendering and the fixed bot messages."""

import re
import unicodedata
from typing import Optional, Sequence

from app.models import FlowOption

BACK_TO_MAIN_MENU_LINE = "0) Volver al menú principal"
REMINDER_BANNER = "Recordatorio 👋"

MSG_REENTRY_HINT = (
    "Perfecto, gracias por tu respuesta. Puedes responder 0 para ver todas las opciones "
    "o 1 para hablar de inmediato con una ejecutiva."
)
MSG_REENTRY_INVALID = "Responde 0 para ver todas las opciones o 1 para hablar con una ejecutiva."
MSG_REENTRY_RESET = "Perfecto. Estas son todas las opciones:"
MSG_BACK_TO_MAIN_MENU = "Perfecto. Volvemos al menú principal:"
MSG_OPTIONS_RECOVERY = "Perfecto, estas son las opciones disponibles:"
MSG_STREAK_CLOSED = (
    "Por ahora solo puedo ayudarte con los servicios configurados. "
    "Si quieres, vuelve a escribirnos para retomar."
)
MSG_SUBMENU_HINT = "También puedes responder 0 para volver al menú principal."
MSG_HANDOFF_WITH_NUMBER = "Gracias. Te derivaré con un ejecutivo. También puedes escribir a {number}."
MSG_HANDOFF = "Gracias. Te derivaré con un ejecutivo del equipo."

NOTIFICATION_SUBJECT = "LeadOS: Lead requiere intervención humana"

_LEADING_ONE = re.compile(r"(^|\n)\s*1\)")


def normalize_text(text: Optional[str]) -> str:
    """Lower-case, strip diacritics and surrounding whitespace."""
    if not text:
        return ""
    decomposed = unicodedata.normalize("NFD", text.lower())
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return stripped.strip()


def render_options_list(options: Sequence[FlowOption], include_back_to_main_menu: bool = False) -> str:
    lines = [f"{option.option_order}) {option.label_text}" for option in options]
    if include_back_to_main_menu:
        lines.append(BACK_TO_MAIN_MENU_LINE)
    return "\n".join(lines)


def prompt_lists_options(prompt_text: str, options: Sequence[FlowOption]) -> bool:
    if _LEADING_ONE.search(prompt_text or ""):
        return True
    normalized_prompt = normalize_text(prompt_text)
    return any(
        normalize_text(option.label_text) and normalize_text(option.label_text) in normalized_prompt
        for option in options
    )


def render_step_prompt(
    prompt_text: str,
    options: Sequence[FlowOption],
    include_back_to_main_menu: bool = False,
) -> str:
    """Prompt followed by `N) label` lines, unless the prompt already lists them."""
    if prompt_lists_options(prompt_text, options):
        return prompt_text
    return "\n".join([prompt_text, render_options_list(options, include_back_to_main_menu)])


def render_reminder(prompt_text: str, options: Sequence[FlowOption], include_back_to_main_menu: bool = False) -> str:
    return f"{REMINDER_BANNER}\n\n{render_step_prompt(prompt_text, options, include_back_to_main_menu)}"


def render_with_options(header: str, options: Sequence[FlowOption], include_back_to_main_menu: bool = False) -> str:
    return f"{header}\n{render_options_list(options, include_back_to_main_menu)}"


def render_out_of_scope(client_name: str, options: Sequence[FlowOption], is_submenu: bool = False) -> str:
    if not options:
        return f"Puedo ayudarte solo con los servicios disponibles de {client_name}."

    lines = [
        f"Puedo ayudarte solo con los servicios de {client_name}.",
        "Si quieres ver las opciones válidas, responde: OPCIONES.",
    ]
    if is_submenu:
        lines.append(MSG_SUBMENU_HINT)
    return "\n".join(lines)


def render_handoff(human_forward_number: Optional[str]) -> str:
    if human_forward_number:
        return MSG_HANDOFF_WITH_NUMBER.format(number=human_forward_number)
    return MSG_HANDOFF


def render_notification_html(lead_name: str, lead_id: str, score: int, reason: str) -> str:
    return (
        "<h2>Lead requiere intervención humana</h2>"
        f"<p><strong>Lead:</strong> {lead_name} ({lead_id})</p>"
        f"<p><strong>Score:</strong> {score}</p>"
        f"<p><strong>Razón:</strong> {reason}</p>"
    )
