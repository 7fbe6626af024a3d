import json
import sys
from pathlib import Path

import pytest

from gamemode import campaign_tool


def test_load_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        campaign_tool.load_campaign_file(tmp_path / "missing.json")


def test_summary_prints_routes_markers_and_questions(monkeypatch, capsys):
    monkeypatch.setattr(sys, "argv", ["campaign_tool", "summary"])
    campaign_tool.main()
    out = capsys.readouterr().out
    assert "Title: Chinatown Heritage Hunt" in out
    assert "Routes: 2 | Markers: 4 | Questions: 5" in out
    assert "Max score: 55" in out
    assert "Starting hint: Start where sailors once gave thanks" in out
    assert "Q (true_false, 10 pts)" in out


def test_summary_rejects_invalid_file(tmp_path, monkeypatch):
    broken = tmp_path / "broken.json"
    broken.write_text(
        json.dumps(
            {
                "routes": [
                    {
                        "markers": [
                            {
                                "waypoint": {"latitude": 1.3, "longitude": 103.8},
                                "questions": [{"type": "true_false", "correct_answer": "perhaps"}],
                            }
                        ]
                    }
                ]
            }
        ),
        encoding="utf-8",
    )
    monkeypatch.setattr(sys, "argv", ["campaign_tool", "summary", "--path", str(broken)])
    with pytest.raises(SystemExit):
        campaign_tool.main()


def test_import_loads_campaign_into_database(tmp_path, monkeypatch, capsys):
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'cli.db'}")
    monkeypatch.setattr(sys, "argv", ["campaign_tool", "import"])
    campaign_tool.main()
    out = capsys.readouterr().out
    assert "Imported campaign campaign-chinatown (2 routes, 4 markers, 5 questions)" in out
    assert Path(tmp_path / "cli.db").exists()
