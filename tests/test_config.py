import logging

import pytest

from tally.config import (
    DEFAULT_MARKERS,
    DEFAULT_MARKERS_FILE,
    MarginStrategy,
    RedFlagConfig,
    RunnerConfig,
    TallyConfig,
    VotingConfig,
    configure_logging,
    load_marker_table,
)
from tally.errors import ConfigurationError

TALLY_VARS = [
    "TALLY_K_MARGIN",
    "TALLY_MAX_CANDIDATES",
    "TALLY_MARGIN_STRATEGY",
    "TALLY_RED_FLAG_THRESHOLD",
    "TALLY_MARKERS_FILE",
    "TALLY_RED_FLAGGING",
    "TALLY_CONCURRENCY",
    "TALLY_ROUND_TIMEOUT",
    "TALLY_MAX_GENERATION_FAILURES",
    "TALLY_GENERATOR_CMD",
    "TALLY_GENERATOR_ARGS",
    "TALLY_GENERATOR_TIMEOUT",
    "TALLY_GENERATOR_MAX_OUTPUT",
    "TALLY_TRACING_ENABLED",
    "TALLY_TRACE_DIR",
    "TALLY_LOG_LEVEL",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in TALLY_VARS:
        monkeypatch.delenv(name, raising=False)


def test_defaults_from_empty_environment():
    config = TallyConfig.from_env()

    assert config.voting.k_margin == 3
    assert config.voting.max_candidates is None
    assert config.voting.effective_max_candidates == 15
    assert config.voting.margin_strategy is MarginStrategy.RUNNER_UP
    assert config.red_flags.enabled is True
    assert config.red_flags.markers == DEFAULT_MARKERS
    assert config.runner.concurrency == 3
    assert config.runner.round_timeout_sec is None
    assert config.generator.cmd is None
    assert config.tracing.trace_dir == ".tally-traces"


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("TALLY_K_MARGIN", "2")
    monkeypatch.setenv("TALLY_MAX_CANDIDATES", "9")
    monkeypatch.setenv("TALLY_MARGIN_STRATEGY", "ALL_OTHERS")
    monkeypatch.setenv("TALLY_RED_FLAG_THRESHOLD", "1.5")
    monkeypatch.setenv("TALLY_RED_FLAGGING", "false")
    monkeypatch.setenv("TALLY_CONCURRENCY", "5")
    monkeypatch.setenv("TALLY_ROUND_TIMEOUT", "30")
    monkeypatch.setenv("TALLY_GENERATOR_CMD", "ollama")
    monkeypatch.setenv("TALLY_GENERATOR_ARGS", "run llama3")
    monkeypatch.setenv("TALLY_TRACING_ENABLED", "false")

    config = TallyConfig.from_env()

    assert config.voting.k_margin == 2
    assert config.voting.max_candidates == 9
    assert config.voting.margin_strategy is MarginStrategy.ALL_OTHERS
    assert config.red_flags.threshold == 1.5
    assert config.red_flags.enabled is False
    assert config.runner.concurrency == 5
    assert config.runner.round_timeout_sec == 30.0
    assert config.generator.cmd == "ollama"
    assert config.generator.args == ["run", "llama3"]
    assert config.tracing.enabled is False


@pytest.mark.parametrize(
    "name, value",
    [
        ("TALLY_K_MARGIN", "three"),
        ("TALLY_RED_FLAG_THRESHOLD", "high"),
        ("TALLY_MARGIN_STRATEGY", "majority"),
        ("TALLY_CONCURRENCY", "0"),
    ],
)
def test_invalid_environment_is_rejected(monkeypatch, name, value):
    monkeypatch.setenv(name, value)
    with pytest.raises(ConfigurationError):
        TallyConfig.from_env()


def test_cap_below_minimum_from_environment(monkeypatch):
    monkeypatch.setenv("TALLY_K_MARGIN", "4")
    monkeypatch.setenv("TALLY_MAX_CANDIDATES", "6")
    with pytest.raises(ConfigurationError, match="2\\*k_margin-1 = 7"):
        TallyConfig.from_env()


def test_markers_file_from_environment(monkeypatch, tmp_path):
    path = tmp_path / "markers.yaml"
    path.write_text('markers:\n  "i guess": 1.0\n  "perhaps": 0.4\n')
    monkeypatch.setenv("TALLY_MARKERS_FILE", str(path))

    config = TallyConfig.from_env()

    assert config.red_flags.markers == {"i guess": 1.0, "perhaps": 0.4}


# -----------------------------------------------------------------------------
# Marker tables
# -----------------------------------------------------------------------------

def test_bundled_marker_file_loads():
    assert load_marker_table(DEFAULT_MARKERS_FILE) == DEFAULT_MARKERS


def test_missing_marker_file(tmp_path):
    with pytest.raises(ConfigurationError, match="not found"):
        load_marker_table(tmp_path / "nope.yaml")


@pytest.mark.parametrize("content", ["", "markers: {}\n", "- hmm\n- wait\n"])
def test_marker_file_without_mapping(tmp_path, content):
    path = tmp_path / "markers.yaml"
    path.write_text(content)
    with pytest.raises(ConfigurationError, match="no 'markers' mapping"):
        load_marker_table(path)


def test_marker_file_with_bad_weight(tmp_path):
    path = tmp_path / "markers.yaml"
    path.write_text("markers:\n  hmm: lots\n")
    with pytest.raises(ConfigurationError, match="non-numeric"):
        load_marker_table(path)


# -----------------------------------------------------------------------------
# Validation
# -----------------------------------------------------------------------------

def test_voting_config_validation():
    VotingConfig(k_margin=1, max_candidates=1).validate()
    with pytest.raises(ConfigurationError):
        VotingConfig(k_margin=0).validate()
    with pytest.raises(ConfigurationError):
        VotingConfig(k_margin=3, max_candidates=4).validate()


@pytest.mark.parametrize(
    "kwargs",
    [
        {"threshold": 0},
        {"circular_ratio": 0},
        {"circular_ratio": 1.5},
        {"min_sentences": 1},
        {"markers": {"hmm": -0.1}},
    ],
)
def test_red_flag_config_validation(kwargs):
    with pytest.raises(ConfigurationError):
        RedFlagConfig(**kwargs).validate()


@pytest.mark.parametrize(
    "kwargs",
    [
        {"concurrency": 0},
        {"round_timeout_sec": 0},
        {"max_generation_failures": -1},
    ],
)
def test_runner_config_validation(kwargs):
    with pytest.raises(ConfigurationError):
        RunnerConfig(**kwargs).validate()


def test_configuration_error_is_a_value_error():
    with pytest.raises(ValueError):
        VotingConfig(k_margin=-2).validate()


def test_configure_logging(monkeypatch):
    calls = []
    monkeypatch.setattr(logging, "basicConfig", lambda **kw: calls.append(kw))

    configure_logging("DEBUG")

    assert calls == [{"level": "DEBUG", "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s"}]
