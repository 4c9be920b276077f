"""End-to-end tests for the command-line entrypoint."""

from __future__ import annotations

import os
import sys
import types

import pytest

from helpers import DEFAULT_TOKENS, ScriptedEngine, vocab_text
from osprey.main import main


@pytest.fixture
def cli_engine(monkeypatch: pytest.MonkeyPatch) -> ScriptedEngine:
    engine = ScriptedEngine()
    module = types.ModuleType("cli_engine_pkg")
    module.options = {}

    def build(**options):
        module.options.update(options)
        return engine

    module.build = build
    monkeypatch.setitem(sys.modules, "cli_engine_pkg", module)
    engine.module = module
    return engine


def test_generate_prints_tokens(cli_engine: ScriptedEngine, capsys: pytest.CaptureFixture) -> None:
    code = main(
        [
            "generate",
            "describe the image",
            "--engine",
            "cli_engine_pkg:build",
            "--engine-option",
            "model=llava.gguf",
            "--top-k",
            "0",
            "--reset",
        ]
    )

    assert code == 0
    captured = capsys.readouterr()
    assert captured.out == vocab_text(DEFAULT_TOKENS) + "\n"
    assert "succeeded: 4 tokens" in captured.err
    assert cli_engine.module.options == {"model": "llava.gguf"}
    assert cli_engine.calls[0] == "reset"
    assert cli_engine.sampling[0].top_k == cli_engine.n_vocab()


def test_generate_reports_failure(cli_engine: ScriptedEngine, capsys: pytest.CaptureFixture) -> None:
    cli_engine.fail_on = "generate"
    code = main(["generate", "x", "--engine", "cli_engine_pkg:build"])

    assert code == 1
    captured = capsys.readouterr()
    assert "aborted" in captured.err
    assert "engine generate failed" in captured.err


def test_generate_requires_engine(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("OSPREY_ENGINE", raising=False)
    with pytest.raises(SystemExit, match="An engine must be given"):
        main(["generate", "x"])


def test_bad_engine_reference_exits() -> None:
    with pytest.raises(SystemExit, match="must be in the form"):
        main(["generate", "x", "--engine", "nocolon"])


def test_no_command_prints_help(capsys: pytest.CaptureFixture) -> None:
    assert main([]) == 0
    assert "generate" in capsys.readouterr().out


@pytest.fixture
def uvicorn_runs(monkeypatch: pytest.MonkeyPatch) -> list:
    runs: list = []
    module = types.ModuleType("uvicorn")
    module.run = lambda app, **kwargs: runs.append((app, kwargs))
    monkeypatch.setitem(sys.modules, "uvicorn", module)
    for name in list(os.environ):
        if name.startswith("OSPREY_"):
            monkeypatch.delenv(name)
    return runs


class TestServe:
    def test_reads_settings_from_environment(
        self, uvicorn_runs: list, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("OSPREY_ENGINE", "cli_engine_pkg:build")
        monkeypatch.setenv("OSPREY_ENGINE_OPTIONS", "model=llava.gguf")
        monkeypatch.setenv("OSPREY_HOST", "127.0.0.1")
        monkeypatch.setenv("OSPREY_PORT", "9123")
        monkeypatch.setenv("OSPREY_LOG_LEVEL", "warning")
        monkeypatch.setenv("OSPREY_DEBUG", "1")
        monkeypatch.setenv("OSPREY_JPEG_QUALITY", "75")
        monkeypatch.setenv("OSPREY_URL_SAFE_IMAGES", "true")

        assert main(["serve"]) == 0

        ((app, kwargs),) = uvicorn_runs
        assert kwargs == {"host": "127.0.0.1", "port": 9123, "log_level": "warning"}
        config = app.state.server_state.config
        assert config.engine == "cli_engine_pkg:build"
        assert config.engine_options == {"model": "llava.gguf"}
        assert config.debug is True
        assert config.jpeg_quality == 75
        assert config.url_safe_images is True

    def test_flags_override_environment(
        self, uvicorn_runs: list, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("OSPREY_PORT", "9123")
        monkeypatch.setenv("OSPREY_ENGINE_OPTIONS", "model=a.gguf,n_ctx=2048")

        main(
            [
                "serve",
                "--engine",
                "cli_engine_pkg:build",
                "--port",
                "9999",
                "--engine-option",
                "model=b.gguf",
                "--url-safe-images",
            ]
        )

        ((app, kwargs),) = uvicorn_runs
        assert kwargs["port"] == 9999
        assert kwargs["host"] == "0.0.0.0"
        config = app.state.server_state.config
        assert config.engine_options == {"model": "b.gguf", "n_ctx": "2048"}
        assert config.url_safe_images is True
        assert config.debug is False

    def test_invalid_environment_exits(
        self, uvicorn_runs: list, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("OSPREY_JPEG_QUALITY", "0")
        with pytest.raises(SystemExit, match="jpeg_quality"):
            main(["serve", "--engine", "cli_engine_pkg:build"])
        assert uvicorn_runs == []
