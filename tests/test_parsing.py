"""Tests for tagged-result parsing of model output and SSE line decoding."""

import pytest

from braindump.completion.parsing import Parsed, Unparseable, parse_model_output
from braindump.completion.streaming import StreamEvent, decode_sse_line


def _require_list(value):
    if not isinstance(value, list):
        raise ValueError("expected a list")
    return value


# --- parse_model_output ----------------------------------------------------------

def test_strict_json():
    result = parse_model_output('  [{"name": "A"}]  ')
    assert result == Parsed(value=[{"name": "A"}], strategy="strict")


def test_code_fence():
    raw = 'Here you go:\n```json\n{"topics": ["a", "b"]}\n```\nAnything else?'
    result = parse_model_output(raw)
    assert isinstance(result, Parsed)
    assert result.strategy == "code_fence"
    assert result.value == {"topics": ["a", "b"]}


def test_balanced_span_skips_bracketed_prose():
    raw = 'I found [5-8] topics as asked: [{"name": "Budget"}, {"name": "Hiring"}] Hope it helps.'
    result = parse_model_output(raw)
    assert isinstance(result, Parsed)
    assert result.strategy == "balanced_span"
    assert [t["name"] for t in result.value] == ["Budget", "Hiring"]


def test_brackets_inside_strings_do_not_end_the_span():
    raw = 'Result: {"name": "a ] tricky } name", "tags": ["x"]} done'
    result = parse_model_output(raw)
    assert isinstance(result, Parsed)
    assert result.value == {"name": "a ] tricky } name", "tags": ["x"]}


def test_validator_rejection_falls_through_to_next_candidate():
    raw = 'meta {"count": 2} then the list [1, 2]'
    result = parse_model_output(raw, validate=_require_list)
    assert result == Parsed(value=[1, 2], strategy="balanced_span")


def test_validator_rejecting_everything_is_unparseable():
    result = parse_model_output('{"only": "an object"}', validate=_require_list)
    assert isinstance(result, Unparseable)
    assert "expected a list" in result.reason
    assert result.raw_text == '{"only": "an object"}'


@pytest.mark.parametrize("raw", ["", "   \n", None])
def test_empty_output(raw):
    result = parse_model_output(raw)
    assert isinstance(result, Unparseable)
    assert result.reason == "empty output"


def test_unbalanced_json_is_unparseable():
    assert isinstance(parse_model_output('[{"name": "cut off'), Unparseable)


# --- decode_sse_line -------------------------------------------------------------

@pytest.mark.parametrize(
    "line,expected",
    [
        ('data: {"choices": [{"delta": {"content": "Hi"}}]}', StreamEvent(text="Hi")),
        ("data: [DONE]", StreamEvent(done=True)),
        ('data: {"error": {"message": "model is overloaded"}}', StreamEvent(error="model is overloaded")),
        (": OPENROUTER PROCESSING", None),
        ("", None),
        ("event: ping", None),
        ("data: not json", None),
        ('data: {"choices": [{"delta": {"role": "assistant"}}]}', None),
        ('data: {"choices": []}', None),
    ],
)
def test_decode_sse_line(line, expected):
    assert decode_sse_line(line) == expected
