"""Tests for deliberation/sanitizer.py."""

import random

import pytest

from config.config_loader import SanitizerConfig
from deliberation.sanitizer import (
    Sanitizer,
    extract_bullets,
    extract_prefixed,
    finalize,
    is_clean,
    is_meta_sentence,
    sanitize,
    strip_urls,
)

SAMPLES = [
    "We need to think about this. Let's count characters.\n"
    "Blue: Remote work saves commuting time and boosts focus for most teams.",
    'We need to keep it short. Final answer: "Four day weeks raise output and morale across firms."',
    "We need to argue for the proposition.\nLet's count the characters.\n"
    "Cities should invest in protected bike lanes now. They cut traffic deaths and make streets calmer.",
    "**Bold claim** about trains — they are faster than planes on short routes.",
    "Blue: Bike lanes save lives, see https://example.com/study for more.",
    "Red: First sentence is right here. Second sentence goes on and on for a while longer.",
    "Moderator: Welcome to today's debate on city cycling. Blue argues for it and Red against.",
    "word " * 200,
    "!!!",
]


def test_role_prefix_takes_last_occurrence():
    raw = (
        "Blue: First draft line that is long enough.\n"
        "Hmm, refine.\n"
        "Blue: Final refined argument about four day weeks."
    )
    assert sanitize(raw, "Blue", 400) == "Final refined argument about four day weeks."


def test_role_prefix_stops_at_next_speaker():
    raw = "Blue: Trains beat planes on short routes.\nRed: No they do not."
    assert extract_prefixed(raw, "Blue") == "Trains beat planes on short routes."


def test_planning_text_before_prefix_is_dropped():
    assert sanitize(SAMPLES[0], "Blue", 400) == (
        "Remote work saves commuting time and boosts focus for most teams."
    )


def test_quoted_final_answer():
    assert sanitize(SAMPLES[1], "Red", 400) == "Four day weeks raise output and morale across firms."


def test_sentence_filter_drops_meta_sentences():
    assert sanitize(SAMPLES[2], "Blue", 400) == (
        "Cities should invest in protected bike lanes now. "
        "They cut traffic deaths and make streets calmer."
    )


def test_markdown_and_dashes_are_cleaned():
    assert sanitize(SAMPLES[3], "Blue", 400) == (
        "Bold claim about trains, they are faster than planes on short routes."
    )


def test_urls_are_removed():
    result = sanitize(SAMPLES[4], "Blue", 400)
    assert "http" not in result
    assert "example.com" not in result
    assert result.startswith("Bike lanes save lives")


def test_think_block_is_ignored():
    raw = "<think>We need to plan the answer.</think>Blue: Solar power is cheaper than coal today."
    assert sanitize(raw, "Blue", 400) == "Solar power is cheaper than coal today."


def test_truncates_to_last_sentence_boundary():
    result = sanitize(SAMPLES[5], "Red", 60)
    assert result == "First sentence is right here."


def test_long_text_without_sentence_end_is_hard_cut():
    result = sanitize(SAMPLES[7], "Blue", 400)
    assert 0 < len(result) <= 400
    assert result.startswith("word word")


@pytest.mark.parametrize("raw", SAMPLES)
@pytest.mark.parametrize("max_len", [40, 120, 400])
def test_never_exceeds_max_len_and_never_empty(raw, max_len):
    result = sanitize(raw, "Blue", max_len)
    assert 0 < len(result) <= max_len


def test_empty_input_gives_empty_output():
    assert sanitize("", "Blue", 400) == ""
    assert sanitize("   \n ", "Blue", 400) == ""


def test_invalid_max_len_rejected():
    with pytest.raises(ValueError):
        sanitize("text", "Blue", 0)


def test_bullet_mode_extracts_up_to_four():
    raw = (
        "Thinking about structure first.\n"
        "- Point one is strong\n"
        "- Point two matters\n"
        'Bullet 3: "Third point here"\n'
        "- four\n"
        "- five"
    )
    result = sanitize(raw, "Blue", 400, bullets=True)
    assert result.split("\n") == [
        "- Point one is strong",
        "- Point two matters",
        "- Third point here",
        "- four",
    ]
    assert sanitize(result, "Blue", 400, bullets=True) == result


def test_bullet_mode_drops_trailing_bullets_to_fit():
    raw = "- Point one is strong\n- Point two matters"
    assert sanitize(raw, "Blue", 30, bullets=True) == "- Point one is strong"


def test_bullet_mode_without_bullets_uses_sentence_path():
    raw = "Blue: Libraries deserve more public funding every year."
    assert sanitize(raw, "Blue", 400, bullets=True) == "Libraries deserve more public funding every year."


def test_extract_bullets_normalizes_markers():
    assert extract_bullets("* star item\n• dot item\nplain line") == ["- star item", "- dot item"]


def test_is_meta_sentence():
    assert is_meta_sentence("We need to count the characters here.")
    assert is_meta_sentence("Too short.")
    assert not is_meta_sentence("Public transit reduces congestion in dense cities.")


def test_strip_urls_handles_markdown_links_and_bare_domains():
    text = "Read [the report](https://example.org/r) or visit wikipedia.org today."
    assert strip_urls(text) == "Read or visit today."


def test_finalize_strips_headings_and_leading_role():
    assert finalize("## Red: Cars are   still needed in rural areas.", 400) == (
        "Cars are still needed in rural areas."
    )


def test_custom_signal_list_replaces_default():
    raw = "Bananas are the key point of this whole debate.\nWe need cleaner rivers in every single city."
    custom = Sanitizer(SanitizerConfig(meta_signals=["bananas"]))
    assert custom.clean(raw, "Blue", 400) == "We need cleaner rivers in every single city."


def test_sanitizer_uses_configured_lengths():
    sanitizer = Sanitizer(SanitizerConfig(debater_max_len=60, moderator_max_len=500))
    assert len(sanitizer.debater(SAMPLES[5], "Red")) <= 60
    assert sanitizer.moderator(SAMPLES[6]).startswith("Welcome to today's debate")
FRAGMENTS = [
    "Blue:", "Red:", "Moderator:", "blue: ", " ", "  ", "\n", "\n\n", "\t",
    "—", "–", "**", "*", "_", "__", "#", "## ", "- ", "* ", "1. ", "Bullet 2: ", '"',
    "<think>", "</think>", "https://example.org/a", "site.com", "[x](https://a.io)",
    "final answer: ", "Thus final answer ", ".", "!", "?", ",", ", ,", ":",
    "We need to count characters", "according to the data", "Solar power is cheap",
    "trains beat planes", "word", "é", "Cities grew fast",
]


def _random_raw(rng: random.Random) -> str:
    return "".join(rng.choice(FRAGMENTS) for _ in range(rng.randint(1, 25)))


@pytest.mark.parametrize("seed", range(20))
@pytest.mark.parametrize("bullets", [False, True])
def test_idempotent_on_random_input(seed, bullets):
    rng = random.Random(seed)
    for _ in range(250):
        raw = _random_raw(rng)
        max_len = rng.choice([1, 5, 40, 120, 400])
        once = sanitize(raw, "Blue", max_len, bullets=bullets)
        assert sanitize(once, "Blue", max_len, bullets=bullets) == once, repr(raw)
        assert len(once) <= max_len, repr(raw)
        if raw.strip():
            assert once, repr(raw)


@pytest.mark.parametrize("raw,role,expected", [
    ("—\n—", "Blue", ","),
    ("Red: \n\n! ", "Red", "!"),
])
def test_degenerate_input_settles_in_one_pass(raw, role, expected):
    once = sanitize(raw, role, 400)
    assert once == expected
    assert sanitize(once, role, 400) == once


def test_prefixed_speech_keeps_sentences_with_signal_phrases():
    raw = (
        "We need to plan.\n"
        "Blue: According to recent figures, cities grew fast. Remote work still saves commuting time."
    )
    spoken = "According to recent figures, cities grew fast. Remote work still saves commuting time."
    assert sanitize(raw, "Blue", 400) == spoken
    assert sanitize(spoken, "Blue", 400) == spoken


def test_is_clean():
    assert is_clean("Trains beat planes on short routes.", "Blue", 400)
    assert not is_clean("Blue: Trains beat planes.", "Blue", 400)
    assert not is_clean("Trains **beat** planes.", "Blue", 400)
    assert not is_clean("Trains beat planes.", "Blue", 10)
