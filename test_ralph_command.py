import pytest

from ralph_command import parse_loop_command, parse_loop_tokens, tokenize_args
from ralph_errors import ValidationError


def test_tokenize_honours_both_quote_styles():
    tokens = tokenize_args("""/ralph-loop "fix the build" --completion-promise 'ALL DONE' --max-iterations 3""")
    assert tokens == ["/ralph-loop", "fix the build", "--completion-promise", "ALL DONE", "--max-iterations", "3"]


def test_tokenize_unescapes_quote_and_backslash_inside_quotes():
    assert tokenize_args(r'"say \"hi\"" "a\\b" "c\d"') == ['say "hi"', "a\\b", "c\\d"]


def test_tokenize_collapses_whitespace_outside_quotes():
    assert tokenize_args("  a \t b\n c  ") == ["a", "b", "c"]


def test_parse_full_command():
    config = parse_loop_command('/ralph-loop "Add tests" --completion-promise "DONE" --max-iterations 5')
    assert config.prompt == "Add tests"
    assert config.completion_promise == "DONE"
    assert config.max_iterations == 5


def test_verb_is_optional():
    config = parse_loop_command('"Add tests" --completion-promise DONE --max-iterations 2')
    assert config.prompt == "Add tests"


def test_custom_verb_is_skipped():
    config = parse_loop_command('ralph "Add tests" --completion-promise DONE --max-iterations 2', verb="ralph")
    assert config.prompt == "Add tests"


def test_fractional_iterations_are_floored():
    config = parse_loop_tokens(["p", "--completion-promise", "DONE", "--max-iterations", "2.9"])
    assert config.max_iterations == 2


def test_default_max_iterations_applies_when_flag_missing():
    config = parse_loop_tokens(["p", "--completion-promise", "DONE"], default_max_iterations=7)
    assert config.max_iterations == 7


@pytest.mark.parametrize("raw", [
    '/ralph-loop "p" --completion-promise DONE --max-iterations 0',
    '/ralph-loop "p" --completion-promise DONE --max-iterations -3',
    '/ralph-loop "p" --completion-promise DONE --max-iterations many',
    '/ralph-loop "p" --completion-promise DONE',
])
def test_non_positive_or_missing_iterations_rejected(raw):
    with pytest.raises(ValidationError, match="max-iterations"):
        parse_loop_command(raw)


def test_missing_completion_promise_rejected():
    with pytest.raises(ValidationError, match="completion-promise"):
        parse_loop_command('/ralph-loop "p" --max-iterations 3')


def test_empty_completion_promise_rejected():
    with pytest.raises(ValidationError, match="completion-promise"):
        parse_loop_tokens(["p", "--completion-promise", "", "--max-iterations", "3"])
    with pytest.raises(ValidationError, match="completion-promise"):
        parse_loop_command('"p" --max-iterations 3 --completion-promise')


@pytest.mark.parametrize("raw", ["/ralph-loop", "/ralph-loop --completion-promise DONE --max-iterations 3", ""])
def test_missing_prompt_rejected(raw):
    with pytest.raises(ValidationError, match="Missing prompt"):
        parse_loop_command(raw)


def test_loop_config_is_immutable():
    config = parse_loop_command('"p" --completion-promise DONE --max-iterations 1')
    with pytest.raises(AttributeError):
        config.max_iterations = 10


def test_zero_iterations_rejected_with_custom_verb():
    with pytest.raises(ValidationError):
        parse_loop_command('tool "fix bug" --max-iterations 0', verb="tool")


def test_tokenize_keeps_empty_quoted_token():
    assert tokenize_args("""a "" '' b""") == ["a", "", "", "b"]


@pytest.mark.parametrize("default", [None, 10])
def test_empty_quoted_completion_promise_rejected_in_single_string(default):
    with pytest.raises(ValidationError, match="completion-promise"):
        parse_loop_command('"fix bug" --completion-promise "" --max-iterations 3', default_max_iterations=default)


@pytest.mark.parametrize("default", [None, 10])
def test_flag_is_never_taken_as_completion_promise(default):
    with pytest.raises(ValidationError, match="completion-promise"):
        parse_loop_tokens(["fix bug", "--completion-promise", "--max-iterations", "3"], default_max_iterations=default)


def test_flag_is_never_taken_as_iteration_count():
    with pytest.raises(ValidationError, match="max-iterations"):
        parse_loop_tokens(["fix bug", "--max-iterations", "--completion-promise", "DONE"], default_max_iterations=4)
