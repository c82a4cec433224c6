from __future__ import annotations

import json

from expertrag.cli import main
from expertrag.config import get_settings
from expertrag.metrics.observability import get_correlation_id


def test_models_command_lists_routable_models(capsys):
    exit_code = main(["models"], settings=get_settings({"default_model": "gemini-2.0-flash"}))

    output = json.loads(capsys.readouterr().out)
    assert exit_code == 0
    assert output["default_model"] == "gemini-2.0-flash"
    providers = {item["model"]: item["provider"] for item in output["models"]}
    assert providers["gemini-2.0-flash"] == "gemini"
    assert providers["x-ai/grok-3"] == "openrouter"


def test_health_command_fails_without_vector_credentials(capsys):
    settings = get_settings({"qdrant_url": None, "qdrant_api_key": None, "embedding_api_key": None})

    exit_code = main(["--request-id", "req-42", "health"], settings=settings)

    error = json.loads(capsys.readouterr().err)
    assert exit_code == 1
    assert error["type"] == "ConfigurationError"
    assert "QDRANT_URL" in error["error"]
    assert error["correlation_id"] == "req-42"
    assert get_correlation_id() == "-"


def test_generate_command_reports_missing_prompt_file(tmp_path, capsys):
    exit_code = main(["generate", "--prompt-file", str(tmp_path / "missing.txt")], settings=get_settings({}))

    error = json.loads(capsys.readouterr().err)
    assert exit_code == 1
    assert error["type"] == "FileNotFoundError"
