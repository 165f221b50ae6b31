import pytest

from tally.config import DEFAULT_MARKERS, DEFAULT_MARKERS_FILE, RedFlagConfig, load_marker_table
from tally.errors import ConfigurationError
from tally.redflag import RedFlagDetector, duplicate_ratio, split_sentences


@pytest.fixture
def detector() -> RedFlagDetector:
    return RedFlagDetector()


def test_stacked_hedges_are_flagged(detector):
    result = detector.scan("Hmm, wait, actually let me reconsider, the answer is 42.")

    assert result.is_flagged
    assert result.score == pytest.approx(2.1)
    assert set(result.markers) == {"hmm", "wait", "actually", "let me reconsider"}
    assert not result.circular


def test_clean_answer_passes(detector):
    result = detector.scan("The answer is 42.")

    assert not result.is_flagged
    assert result.score == 0.0
    assert result.markers == ()


def test_repeated_marker_counts_once(detector):
    result = detector.scan("hmm hmm hmm hmm hmm, the answer is 7")

    assert result.score == pytest.approx(0.3)
    assert not result.is_flagged


def test_mild_hedges_stay_below_threshold(detector):
    result = detector.scan("Actually, wait: it is 7")

    assert result.score == pytest.approx(0.8)
    assert not result.is_flagged


def test_single_self_reversal_is_enough(detector):
    assert detector.scan("On second thought it is 8").is_flagged
    assert detector.scan("This is NOT AS WE THINK").is_flagged


def test_overlapping_markers_both_count(detector):
    result = detector.scan("Wait, maybe it is 3")

    assert result.score == pytest.approx(1.3)
    assert result.markers[0] == "wait, maybe"


def test_circular_reasoning_is_flagged_outright(detector):
    text = "The answer is 4. The answer is 4. The answer is 4. It is 4."
    result = detector.scan(text)

    assert result.circular
    assert result.is_flagged
    assert result.score >= detector.threshold


def test_partial_repetition_is_not_circular(detector):
    text = "First add 2. Then add 2. First add 2. The total is 4."
    assert not detector.scan(text).circular


@pytest.mark.parametrize(
    "text, circular",
    [
        ("A. A. A. A. A. A. A. B. C. D.", True),   # 7 of 10 repeated
        ("A. A. A. A. A. A. B. C. D. E.", False),  # 6 of 10 repeated
    ],
)
def test_circular_ratio_boundary(detector, text, circular):
    result = detector.scan(text)
    assert result.circular is circular
    assert result.is_flagged is circular


def test_short_answers_skip_circular_check(detector):
    assert not detector.scan("Yes. Yes.").is_flagged


def test_empty_text_never_raises(detector):
    result = detector.scan("")
    assert not result.is_flagged
    assert result.score == 0.0


def test_disabled_detector_never_flags():
    detector = RedFlagDetector(RedFlagConfig(enabled=False))
    assert not detector.scan("Hmm, let me reconsider. On second thought, wait, maybe.").is_flagged


def test_custom_marker_table():
    detector = RedFlagDetector(RedFlagConfig(markers={"i'm not sure": 1.0}))

    assert detector.scan("I'm not sure, maybe 5").is_flagged
    assert not detector.scan("Let me reconsider: 5").is_flagged


def test_negative_weight_rejected():
    with pytest.raises(ConfigurationError):
        RedFlagDetector(RedFlagConfig(markers={"hmm": -0.3}))


def test_sentence_helpers():
    sentences = split_sentences("A. B!  A?? ")
    assert sentences == ["A", "B", "A"]
    assert duplicate_ratio(sentences) == pytest.approx(2 / 3)
    assert duplicate_ratio([]) == 0.0


def test_bundled_marker_file_matches_defaults():
    assert load_marker_table(DEFAULT_MARKERS_FILE) == DEFAULT_MARKERS
