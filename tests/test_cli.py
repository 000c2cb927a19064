import json
from unittest import mock

import pytest

from spokable import __main__ as entry
from spokable.cli import build_engine_config
from spokable.config import EngineConfig
from spokable.models import CompletionResult


class EchoClient:
    def execute(self, model_id, parts, generation_config, credential, timeout=None):
        body = parts[0].text.split("\n\n---\n\n", 1)[1]
        return CompletionResult(text=body.upper(), finish_reason="STOP", model=model_id)


def _args(*argv):
    return entry.build_parser().parse_args(list(argv))


def test_cli_flags_override_config_values():
    base = EngineConfig(batch_size_tokens=5000, api_key="from-file")
    args = _args(
        "--model",
        "gemini-2.5-pro,gemini-2.5-flash",
        "--model",
        "gemini-2.0-flash",
        "--batch-size",
        "800",
        "--turbo",
        "--concurrency",
        "4",
        "--no-auto-retry",
        "--retry-delay",
        "0.5",
    )

    config = build_engine_config(args, base)

    assert config.models == ("gemini-2.5-pro", "gemini-2.5-flash", "gemini-2.0-flash")
    assert config.batch_size_tokens == 800
    assert config.effective_concurrency == 4
    assert config.auto_retry is False
    assert config.retry_delay == 0.5
    assert config.api_key == "from-file"


def test_unset_flags_keep_config_values():
    base = EngineConfig(turbo_mode=True, overlap_tokens=50)

    config = build_engine_config(_args(), base)

    assert config.turbo_mode is True
    assert config.overlap_tokens == 50


def test_invalid_override_raises_value_error():
    with pytest.raises(ValueError):
        build_engine_config(_args("--batch-size", "0"), EngineConfig())


def test_main_writes_spoken_text_report_and_log(tmp_path, monkeypatch, capsys):
    monkeypatch.setenv("SPOKABLE_CONFIG_DIR", str(tmp_path / "profile"))
    monkeypatch.delenv("SPOKABLE_API_KEY", raising=False)
    source = tmp_path / "paper.txt"
    source.write_text("alpha beta gamma", encoding="utf-8")
    output = tmp_path / "out"

    with mock.patch("spokable.pipeline.GeminiClient", return_value=EchoClient()):
        code = entry.main(
            [
                "--input",
                str(source),
                "--output",
                str(output),
                "--config",
                str(tmp_path / "missing.yaml"),
                "--api-key",
                "primary-key-0001",
                "--rate-limit-delay",
                "0",
            ]
        )

    assert code == 0
    assert (output / "paper_spoken.txt").read_text(encoding="utf-8") == "ALPHA BETA GAMMA"
    report = json.loads((output / "paper_report.json").read_text(encoding="utf-8"))
    assert report["summary"]["success"] == 1
    assert list((output / "logs").glob("job_*.log"))
    printed = capsys.readouterr().out
    assert "[OK]" in printed
    assert "Transformed 1/1 batch(es)" in printed


def test_main_requires_api_key(tmp_path, monkeypatch):
    monkeypatch.delenv("SPOKABLE_API_KEY", raising=False)
    monkeypatch.delenv("SPOKABLE_BACKUP_API_KEY", raising=False)
    source = tmp_path / "paper.txt"
    source.write_text("text", encoding="utf-8")

    with pytest.raises(SystemExit) as info:
        entry.main(["--input", str(source), "--config", str(tmp_path / "missing.yaml")])

    assert info.value.code == 2


def test_estimate_prints_without_calling_the_api(tmp_path, monkeypatch, capsys):
    monkeypatch.delenv("SPOKABLE_API_KEY", raising=False)
    source = tmp_path / "paper.txt"
    source.write_text("x" * 45_000, encoding="utf-8")

    code = entry.main(["--input", str(source), "--config", str(tmp_path / "missing.yaml"), "--estimate"])

    assert code == 0
    assert "2 batch(es)" in capsys.readouterr().out


def test_console_log_prefixes(capsys):
    entry._console_log("success", "done")
    entry._console_log("warning", "careful")
    entry._console_log("error", "broken")
    entry._console_log("info", "note")

    lines = capsys.readouterr().out.splitlines()
    assert [line.split(" ")[0] for line in lines] == ["[OK]", "[WARN]", "[ERR]", "[INFO]"]
