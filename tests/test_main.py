"""
Tests for the command-line entry point, run against recorded provider replies.
"""

import json
import os
from unittest.mock import patch

import pytest

import main

CONFIG = """
providers:
  - kind: openai
    model: gpt-4o
  - kind: anthropic
    model: claude-3-haiku-20240307
"""


@pytest.fixture
def workspace(tmp_path, sample_input):
    (tmp_path / "plan.json").write_text(json.dumps(sample_input.to_dict()), encoding="utf-8")
    (tmp_path / "prompt.txt").write_text("You are a construction estimator.", encoding="utf-8")
    (tmp_path / "consensus_config.yaml").write_text(CONFIG, encoding="utf-8")
    replay = tmp_path / "recordings"
    replay.mkdir()
    return tmp_path


def _record(workspace, provider_id, payload):
    text = payload if isinstance(payload, str) else json.dumps(payload)
    (workspace / "recordings" / f"{provider_id}.json").write_text(text, encoding="utf-8")


def _argv(workspace, *extra):
    return [
        "main.py", str(workspace / "plan.json"),
        "--system-prompt", str(workspace / "prompt.txt"),
        "--config", str(workspace / "consensus_config.yaml"),
        "--replay", str(workspace / "recordings"),
        *extra,
    ]


@patch.dict(os.environ, {}, clear=True)
class TestMain:

    def test_replay_run_writes_result(self, workspace, payload):
        _record(workspace, "gpt-4o", payload({"name": "Drywall", "category": "finishes",
                                              "quantity": 500, "unit": "SF"}))
        _record(workspace, "claude-3-haiku-20240307", payload({"name": "Drywall", "category": "finishes",
                                                               "quantity": 505, "unit": "SF"}))
        with patch("sys.argv", _argv(workspace)):
            assert main.main() == 0

        result = json.loads((workspace / "plan_consensus.json").read_text(encoding="utf-8"))
        assert result["final_json"]["metadata"]["providers_used"] == ["gpt-4o", "claude-3-haiku-20240307"]
        assert result["final_json"]["items"][0]["adjudicated_by"] == "consensus"

    def test_performance_model_updated(self, workspace, payload):
        _record(workspace, "gpt-4o", payload({"name": "Door", "quantity": 4, "unit": "EA"}))
        _record(workspace, "claude-3-haiku-20240307", payload({"name": "Door", "quantity": 4, "unit": "EA"}))
        perf = workspace / "perf.json"
        out = workspace / "out" / "result.json"
        with patch("sys.argv", _argv(workspace, "--performance-model", str(perf), "-o", str(out))):
            main.main()
        with patch("sys.argv", _argv(workspace, "--performance-model", str(perf), "-o", str(out))):
            main.main()

        assert out.exists()
        assert json.loads(perf.read_text(encoding="utf-8"))["runs"] == 2

    def test_all_providers_failed_exits(self, workspace):
        with patch("sys.argv", _argv(workspace)):
            with pytest.raises(SystemExit) as info:
                main.main()
        assert info.value.code == 1

    def test_missing_input_exits(self, workspace):
        argv = _argv(workspace)
        argv[1] = str(workspace / "missing.json")
        with patch("sys.argv", argv):
            with pytest.raises(SystemExit) as info:
                main.main()
        assert info.value.code == 1
