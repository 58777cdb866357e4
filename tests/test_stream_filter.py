"""
Tests for the reasoning filter used in deep mode
"""

import pytest

from app.services.stream_filter import ReasoningFilter, strip_reasoning


RAW = "<think>step one, step two</think><final>The answer is 42.</final>"


def run(chunks):
    f = ReasoningFilter()
    out = "".join(f.feed(c) for c in chunks)
    return out + f.flush()


def test_hides_reasoning_and_strips_wrappers():
    assert strip_reasoning(RAW) == "The answer is 42."


def test_text_without_delimiters_passes_through():
    assert strip_reasoning("plain answer < 5 and > 3") == "plain answer < 5 and > 3"


def test_every_two_way_split_gives_the_same_output():
    for i in range(len(RAW) + 1):
        assert run([RAW[:i], RAW[i:]]) == "The answer is 42.", f"split at {i}"


def test_char_by_char_stream():
    assert run(list(RAW)) == "The answer is 42."


def test_state_carries_across_chunks():
    f = ReasoningFilter()
    assert f.feed("Hi <thi") == "Hi "
    assert f.feed("nk>secret") == ""
    assert f.inside_hidden_block
    assert f.feed(" still hidden</th") == ""
    assert f.feed("ink> visible") == " visible"
    assert not f.inside_hidden_block
    assert f.flush() == ""


def test_unterminated_reasoning_is_never_shown():
    assert run(["<think>never closed", " more"]) == ""


def test_held_back_partial_is_released_on_flush():
    f = ReasoningFilter()
    assert f.feed("a <fin") == "a "
    assert f.flush() == "<fin"


@pytest.mark.parametrize("raw,expected", [
    ("<final>only final</final>", "only final"),
    ("before<think>x</think>after", "beforeafter"),
    ("<think>a</think>one<think>b</think>two", "onetwo"),
])
def test_variants(raw, expected):
    assert strip_reasoning(raw) == expected
