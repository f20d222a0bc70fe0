import pytest

from etk_prompts import (
    AFTER_LABEL,
    BEFORE_LABEL,
    CONTEXT_PREAMBLE,
    build_context,
    render_request,
    resolve_preset,
)

UNITS = [f"<u{i}>" for i in range(5)]


def _sections(ctx):
    before = ctx.split(BEFORE_LABEL, 1)[1].split(AFTER_LABEL, 1)[0]
    after = ctx.split(AFTER_LABEL, 1)[1]
    return before.split(), after.split()


def test_preset_defaults():
    instruction, prompt = resolve_preset("modernise")
    # It should include defaults
    assert "British English" in prompt
    assert "understated" in prompt
    assert instruction.startswith("You update")


def test_preset_overrides():
    _, prompt = resolve_preset("translate", language="French", style="wry")
    assert "French" in prompt
    assert "wry" in prompt
    assert "{language}" not in prompt


def test_unknown_preset():
    with pytest.raises(KeyError):
        resolve_preset("nope")


def test_first_unit_has_no_before_section():
    ctx = build_context(UNITS, 0, 2, 1)
    before, after = _sections(ctx)
    assert before == []
    assert after == ["<u1>"]
    assert ctx.startswith(CONTEXT_PREAMBLE)


def test_last_unit_has_no_after_section():
    before, after = _sections(build_context(UNITS, 4, 2, 3))
    assert before == ["<u2>", "<u3>"]
    assert after == []


def test_middle_unit_window():
    before, after = _sections(build_context(UNITS, 2, 1, 2))
    assert before == ["<u1>"]
    assert after == ["<u3>", "<u4>"]


def test_zero_window_is_empty_string():
    assert build_context(UNITS, 2, 0, 0) == ""


def test_context_never_includes_self_or_out_of_range():
    for index in range(len(UNITS)):
        for before_n in range(0, 7):
            for after_n in range(0, 7):
                ctx = build_context(UNITS, index, before_n, after_n)
                assert UNITS[index] not in ctx
                before, after = _sections(ctx) if ctx else ([], [])
                assert before == UNITS[max(0, index - before_n):index]
                assert after == UNITS[index + 1:index + 1 + after_n]


def test_single_unit_book():
    ctx = build_context(["<only>"], 0, 3, 3)
    assert "<only>" not in ctx
    assert _sections(ctx) == ([], [])


def test_request_order_is_prompt_content_context():
    txt = render_request("PROMPT", "CONTENT", "CONTEXT")
    assert txt == "PROMPT\nCONTENT\nCONTEXT"
