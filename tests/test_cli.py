"""
End-to-end tests for the command line entry point
"""

import json

import pytest

from page_companion.cli import format_tab_table, main, render_session
from page_companion.queries import JsonFileStore, Session, TabSnapshot


@pytest.fixture
def run(tmp_path, monkeypatch, capsys):
    for name in ("GEMINI_API_KEY", "PERPLEXITY_API_KEY", "PAGE_COMPANION_STORAGE", "PAGE_COMPANION_CONFIG"):
        monkeypatch.delenv(name, raising=False)
    config = tmp_path / "config.yaml"
    config.write_text("context_budget: 2000\n", encoding="utf-8")
    storage = tmp_path / "storage.json"

    def _run(*argv):
        capsys.readouterr()
        code = main(["--config", str(config), "--storage", str(storage), *argv])
        return code, capsys.readouterr().out

    _run.storage = storage
    return _run


@pytest.fixture
def page(tmp_path):
    path = tmp_path / "reefs.html"
    path.write_text("<p>The article discusses coral reef bleaching.</p>", encoding="utf-8")
    return path.as_uri()


def test_open_and_list_tabs(run, page):
    code, out = run("open", page)
    assert code == 0
    assert out.strip() == f"Opened tab 1: {page}"

    run("open", "https://example.com/", "--no-activate")
    _, out = run("tabs")
    lines = out.splitlines()
    assert lines[1].split()[:2] == ["*", "1"]
    assert lines[2].split()[0] == "2"


def test_show_json_reports_record(run, page):
    run("open", page)
    _, out = run("show", "--json")
    assert json.loads(out) == {"searchResults": [], "darkMode": False, "currentModel": "gemini"}


def test_model_and_dark_mode_are_persisted(run, page):
    run("open", page)
    code, out = run("model", "perplexity")
    assert code == 0
    assert out.strip() == "Tab 1 now uses perplexity"
    run("dark-mode", "toggle")

    record = JsonFileStore(run.storage).get(["tab_1"])["tab_1"]
    assert record["currentModel"] == "perplexity"
    assert record["darkMode"] is True

    _, out = run("model")
    assert "* perplexity (sonar)" in out.splitlines()


def test_unknown_model_exits_with_usage_error(run, page, capsys):
    run("open", page)
    with pytest.raises(SystemExit) as excinfo:
        run("model", "grok")
    assert excinfo.value.code == 2
    assert "grok" in capsys.readouterr().err


def test_close_deletes_record(run, page):
    run("open", page)
    run("dark-mode", "on")
    assert "tab_1" in JsonFileStore(run.storage).keys()

    code, _ = run("close", "1")
    assert code == 0
    assert "tab_1" not in JsonFileStore(run.storage).keys()


def test_prune_removes_records_of_closed_tabs(run, page):
    run("open", page)
    JsonFileStore(run.storage).set({"tab_9": {"searchResults": []}, "tab_1": {"searchResults": []}})
    _, out = run("prune")
    assert out.strip() == "Removed 1 stale session record(s)"
    assert set(JsonFileStore(run.storage).keys()) == {"tabs", "tab_1"}


def test_ask_without_key_fails_and_keeps_answer(run, page, capsys):
    run("open", page)
    with pytest.raises(SystemExit) as excinfo:
        run("ask", "What", "is", "this?")
    assert excinfo.value.code == 2
    assert "gemini" in capsys.readouterr().err
    record = JsonFileStore(run.storage).get(["tab_1"]).get("tab_1", {})
    assert "answer" not in record


def test_query_without_open_tab(run, capsys):
    with pytest.raises(SystemExit) as excinfo:
        run("summarize")
    assert excinfo.value.code == 2
    assert "No active tab" in capsys.readouterr().err


def test_format_tab_table_empty():
    assert format_tab_table([], None) == ("   Id  Domain  URL", [])


def test_render_session_sections():
    session = Session(tab_id=3, current_model_id="gemini", summary="Short.", answer="Yes.")
    text = render_session(session, TabSnapshot(id=3, url="https://example.com/a"))
    assert text.splitlines()[0] == "Tab 3: https://example.com/a"
    assert "## Page Summary\nShort." in text
    assert "## Answer\nYes." in text


def test_explain_without_key_fails(run, page, capsys):
    run("open", page)
    with pytest.raises(SystemExit) as excinfo:
        run("explain", "coral", "bleaching", "--model", "perplexity")
    assert excinfo.value.code == 2
    assert "perplexity" in capsys.readouterr().err
