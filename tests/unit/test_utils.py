from core.utils import join_url, safe_filename, truncate_filename


class TestSafeFilename:
    def test_unsafe_characters_replaced(self):
        assert safe_filename('a/b:c*?.jpg') == "a_b_c__.jpg"

    def test_empty_and_dot_names(self):
        assert safe_filename("  ") == "_"
        assert safe_filename("..") == "_"

    def test_long_name_is_capped_in_bytes(self):
        name = safe_filename("설문조사" * 50)

        assert len(name.encode("utf-8")) <= 200
        assert name == ("설문조사" * 50)[: len(name)]

    def test_extension_survives_truncation(self):
        name = truncate_filename("101_" + "x" * 300 + ".jpeg", max_bytes=50)

        assert name.endswith(".jpeg")
        assert len(name.encode("utf-8")) == 50

    def test_multibyte_character_is_not_split(self):
        # 3 bytes per character, budget of 7 bytes keeps two characters
        assert truncate_filename("가나다라", max_bytes=7) == "가나"

    def test_short_names_untouched(self):
        assert truncate_filename("101_cat.jpg") == "101_cat.jpg"


def test_join_url():
    assert join_url("https://kc.example.org/", "/media/a.jpg") == "https://kc.example.org/media/a.jpg"
    assert join_url("https://kc.example.org", "https://cdn.example.org/a.jpg") == "https://cdn.example.org/a.jpg"
