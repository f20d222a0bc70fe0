import json

import pytest

import epub_toolkit_cli
import etk_config
from etk_config import RateBudget
from etk_prompts import CONTEXT_PREAMBLE
from test_etk_epub import make_book


class FakeClient:
    instances = []

    def __init__(self, **kwargs):
        self.kwargs = kwargs
        self.closed = False
        FakeClient.instances.append(self)

    def generate(self, request_text):
        # request is "prompt\ncontent\ncontext"; echo the content back
        content = request_text.split("\n", 1)[1].split(CONTEXT_PREAMBLE, 1)[0]
        return content.replace("marker", "rewritten")

    def close(self):
        self.closed = True


@pytest.fixture
def fast_model(monkeypatch):
    monkeypatch.setitem(etk_config.MODEL_BUDGETS, "test-model", RateBudget(slot_seconds=0.0))
    monkeypatch.setattr(epub_toolkit_cli, "GenerationClient", FakeClient)
    FakeClient.instances = []
    return "test-model"


def test_json_excludes_other_flags(tmp_path):
    with pytest.raises(SystemExit):
        epub_toolkit_cli.main(["-j", str(tmp_path / "a.json"), "-f", "x.epub"])


def test_unknown_model_exits_before_work(tmp_path, capsys):
    src = make_book(tmp_path / "in.epub")
    rc = epub_toolkit_cli.main(["-f", str(src), "-key", "k", "-prompt", "p",
                                "-instruction", "i", "-model", "nope"])
    assert rc == 2
    assert "not a valid model" in capsys.readouterr().err
    assert not FakeClient.instances


def test_list_chapters(tmp_path, capsys):
    src = make_book(tmp_path / "in.epub")
    rc = epub_toolkit_cli.main(["-f", str(src), "-d", str(tmp_path / "out"), "--list-chapters"])
    assert rc == 0
    lines = capsys.readouterr().out.strip().splitlines()
    assert lines[0].startswith("001 | Text/chapter1.xhtml |")
    assert len(lines) == 3


def test_full_run_writes_outputs_and_book(tmp_path, fast_model):
    src = make_book(tmp_path / "in.epub")
    out = tmp_path / "out"
    dest = tmp_path / "result.epub"
    rc = epub_toolkit_cli.main([
        "-f", str(src), "-d", str(out), "-cb", "1", "-ca", "1",
        "-key", "k", "-prompt", "Rewrite.", "-instruction", "Be brief.",
        "-model", fast_model, "-o", str(dest), "--no-progress",
    ])
    assert rc == 0
    assert dest.exists()
    assert "rewritten-2" in (out / "Text" / "chapter2.xhtml").read_text(encoding="utf-8")
    assert FakeClient.instances[0].kwargs["instruction"] == "Be brief."
    assert FakeClient.instances[0].closed

    # second run: nothing left to send, book is rebuilt
    FakeClient.instances = []
    rc = epub_toolkit_cli.main([
        "-f", str(src), "-d", str(out), "-key", "k", "-prompt", "Rewrite.",
        "-instruction", "Be brief.", "-model", fast_model, "-o", str(dest), "--no-progress",
    ])
    assert rc == 0
    assert FakeClient.instances == []


def test_json_config_run(tmp_path, fast_model):
    src = make_book(tmp_path / "in.epub", n=2)
    args = tmp_path / "args.json"
    args.write_text(json.dumps({
        "file": str(src),
        "directory": str(tmp_path / "out"),
        "APIKey": "k",
        "model": fast_model,
        "preset": "copyedit",
        "output": str(tmp_path / "result.epub"),
    }), encoding="utf-8")
    rc = epub_toolkit_cli.main(["-j", str(args), "--no-progress"])
    assert rc == 0
    assert (tmp_path / "result.epub").exists()


@pytest.mark.parametrize("flag", [["-o", "x.epub"], ["--max-attempts", "2"], ["--estimator", "tiktoken"], ["-cb", "1"]])
def test_json_rejects_any_value_flag(tmp_path, flag):
    with pytest.raises(SystemExit):
        epub_toolkit_cli.main(["-j", str(tmp_path / "a.json")] + flag)


def test_list_chapters_does_not_create_output_dir(tmp_path):
    src = make_book(tmp_path / "in.epub")
    out = tmp_path / "never-made"
    assert epub_toolkit_cli.main(["-f", str(src), "-d", str(out), "--list-chapters"]) == 0
    assert not out.exists()
