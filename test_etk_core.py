from types import SimpleNamespace

import pytest

from etk_core import (
    EmptyResponseError,
    GenerationClient,
    PersistenceError,
    ServiceError,
    output_path,
    write_unit_output,
)


class FakeCompletions:
    def __init__(self, reply=None, error=None):
        self.reply = reply
        self.error = error
        self.kwargs = None

    def create(self, **kwargs):
        self.kwargs = kwargs
        if self.error is not None:
            raise self.error
        return self.reply


def _reply(*contents):
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=c)) for c in contents])


def _client(completions):
    c = GenerationClient(model="gemini-1.5-pro", api_key="k", instruction="Be brief.")
    c.client = SimpleNamespace(chat=SimpleNamespace(completions=completions))
    return c


def test_generate_returns_first_choice_verbatim():
    fake = FakeCompletions(reply=_reply("  <p>new text</p>\n", "second"))
    assert _client(fake).generate("Rewrite.\nchapter") == "  <p>new text</p>\n"

    assert fake.kwargs["model"] == "gemini-1.5-pro"
    assert fake.kwargs["messages"] == [
        {"role": "system", "content": "Be brief."},
        {"role": "user", "content": "Rewrite.\nchapter"},
    ]
    assert fake.kwargs["temperature"] == 0.3
    assert fake.kwargs["top_p"] == 0.8


@pytest.mark.parametrize("reply", [_reply(), _reply(None), _reply(""), None])
def test_generate_without_text_is_empty_response(reply):
    with pytest.raises(EmptyResponseError):
        _client(FakeCompletions(reply=reply)).generate("req")


def test_generate_wraps_sdk_errors():
    fake = FakeCompletions(error=RuntimeError("connection reset"))
    with pytest.raises(ServiceError, match="connection reset"):
        _client(fake).generate("req")


def test_output_path_stays_inside_directory(tmp_path):
    assert output_path(tmp_path, "Text/ch1.xhtml") == tmp_path / "Text" / "ch1.xhtml"
    for bad in ("../escape.xhtml", "Text/../../escape.xhtml", "/etc/passwd", "."):
        with pytest.raises(PersistenceError):
            output_path(tmp_path / "out", bad)


def test_write_refuses_escaping_identifier(tmp_path):
    out = tmp_path / "out"
    with pytest.raises(PersistenceError):
        write_unit_output(out, "../escape.xhtml", "text")
    assert not (tmp_path / "escape.xhtml").exists()
