from utils.message_sanitizer import sanitize_message


def test_markup_is_stripped_not_escaped():
    assert sanitize_message("<script>alert(1)</script>hi") == "alert(1)hi"
    assert sanitize_message("<b>bold</b> move") == "bold move"


def test_markup_only_message_becomes_empty():
    assert sanitize_message("<br><img src=x>") == ""


def test_control_characters_removed_but_newlines_kept():
    assert sanitize_message("line one\nline\u200b two\u2028") == "line one\nline two"


def test_disabled_only_trims():
    assert sanitize_message("  <i>raw</i>  ", enabled=False) == "<i>raw</i>"


def test_empty_input():
    assert sanitize_message("") == ""
    assert sanitize_message(None) == ""
