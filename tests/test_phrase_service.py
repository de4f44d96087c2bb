import pytest

from app.config import DEFAULT_PHRASES_PATH
from app.services.phrase_service import PhraseSet, load_phrase_book


@pytest.fixture
def book():
    return load_phrase_book(DEFAULT_PHRASES_PATH)


class TestPhraseSet:
    def test_exact_and_contains(self):
        phrases = PhraseSet.from_config({"exact": ["Sí"], "contains": ["ver opciones"]})

        assert phrases.matches("si") is True
        assert phrases.matches("quiero VER opciones ahora") is True
        assert phrases.matches("sin duda") is False

    def test_invalid_config_matches_nothing(self):
        assert PhraseSet.from_config(None).matches("opciones") is False


class TestDefaultPhraseBook:
    @pytest.mark.parametrize("text", ["Opciones", "sí", "me puedes mostrar opciones"])
    def test_wants_options(self, book, text):
        assert book.wants_options_list(text) is True

    @pytest.mark.parametrize("text", ["0", "Menú", "volver al menú principal"])
    def test_back_to_main_menu(self, book, text):
        assert book.is_back_to_main_menu(text) is True

    def test_menu_inside_sentence_is_not_back(self, book):
        assert book.is_back_to_main_menu("qué tiene el menú de hoy") is False

    def test_reentry_choices(self, book):
        assert book.is_reentry_resume(" 0 ") is True
        assert book.is_reentry_escalate("1") is True
        assert book.is_reentry_escalate("10") is False

    def test_missing_file_gives_empty_book(self, tmp_path):
        empty = load_phrase_book(str(tmp_path / "missing.yaml"))
        assert empty.wants_options_list("opciones") is False

    def test_custom_file(self, tmp_path):
        path = tmp_path / "phrases.yaml"
        path.write_text("wants_options:\n  exact:\n    - lista\n", encoding="utf-8")

        custom = load_phrase_book(str(path))

        assert custom.wants_options_list("Lista") is True
        assert custom.is_back_to_main_menu("0") is False
