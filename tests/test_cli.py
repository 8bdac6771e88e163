"""Unit tests for the CLI entry point."""

import json
import logging
import os

import pytest

from reelforge import pipeline
from reelforge.__main__ import build_parser, main
from reelforge.schemas import StudioConfig


@pytest.fixture(autouse=True)
def _isolated(monkeypatch, tmp_path):
    monkeypatch.setattr("reelforge.__main__.load_dotenv", lambda: None)
    monkeypatch.setattr(
        "reelforge.config.load_studio_config",
        lambda path=None: StudioConfig(db_path=str(tmp_path / "studio.db")),
    )
    monkeypatch.setattr(pipeline, "run_pipeline", pipeline.run_pipeline.fn)
    monkeypatch.setattr(pipeline, "run_rerun", pipeline.run_rerun.fn)
    monkeypatch.setattr(pipeline, "advance_phase", pipeline.advance_phase.fn)
    monkeypatch.setattr(pipeline, "rerun_shot", pipeline.rerun_shot.fn)
    logger = logging.getLogger("reelforge")
    handlers = list(logger.handlers)
    yield
    for h in logger.handlers[len(handlers):]:
        h.close()
    logger.handlers = handlers


# ─── Parser ──────────────────────────────────────────────────


def test_parser_defaults():
    args = build_parser().parse_args(["a frog"])
    assert args.prompt == "a frog"
    assert args.duration == 8
    assert args.aspect_ratio == "16:9"
    assert args.mode == "action"
    assert args.port == 8420
    assert not args.dry_run


def test_parser_duration_auto_and_invalid():
    assert build_parser().parse_args(["x", "--duration", "auto"]).duration == "auto"
    with pytest.raises(SystemExit):
        build_parser().parse_args(["x", "--duration", "5"])


def test_parser_rejects_unknown_mode():
    with pytest.raises(SystemExit):
        build_parser().parse_args(["x", "--mode", "opera"])


# ─── main ────────────────────────────────────────────────────


def test_no_prompt_prints_help(tmp_path, capsys):
    with pytest.raises(SystemExit) as exc_info:
        main(["--dry-run", "--output-dir", str(tmp_path)])
    assert exc_info.value.code == 0
    assert "usage: reelforge" in capsys.readouterr().out


def test_rerun_requires_checkpoint(tmp_path):
    with pytest.raises(SystemExit) as exc_info:
        main(["--dry-run", "--rerun", "2", "--output-dir", str(tmp_path)])
    assert exc_info.value.code == 2


def test_missing_api_key_exits(tmp_path, monkeypatch, capsys):
    monkeypatch.delenv("GROK_API_KEY", raising=False)
    monkeypatch.delenv("XAI_API_KEY", raising=False)
    with pytest.raises(SystemExit) as exc_info:
        main(["a frog", "--output-dir", str(tmp_path)])
    assert exc_info.value.code == 1
    assert "No API key" in capsys.readouterr().err


def test_dry_run_end_to_end(tmp_path, capsys):
    main(["a frog crosses a pond", "--dry-run", "--shots", "2", "--output-dir", str(tmp_path)])
    out = capsys.readouterr().out
    assert "Dry run summary:" in out

    cp = json.loads((tmp_path / "checkpoint.json").read_text())
    assert cp["phase"] == "complete"
    assert cp["prompt"] == "a frog crosses a pond"
    assert [s["index"] for s in cp["shots"]] == [1, 2]
    assert cp["clips"]["1"]["ref"].startswith("dryrun://video/")
    assert os.path.isfile(tmp_path / "prompts" / "summary.md")
    assert os.path.isdir(tmp_path / "prompts" / "video")
    assert os.path.isfile(tmp_path / "reelforge.log")


def test_dry_run_rerun_from_checkpoint(tmp_path):
    main(["a frog", "--dry-run", "--shots", "2", "--output-dir", str(tmp_path)])
    cp_path = str(tmp_path / "checkpoint.json")
    before = json.loads(open(cp_path).read())

    main(
        [
            "--dry-run",
            "--checkpoint",
            cp_path,
            "--rerun",
            "2",
            "--rerun-prompt",
            "Close: the frog blinks",
            "--output-dir",
            str(tmp_path),
        ]
    )
    after = json.loads(open(cp_path).read())
    assert after["clips"]["1"] == before["clips"]["1"]
    assert after["clips"]["2"]["ref"] != before["clips"]["2"]["ref"]
    assert after["shots"][1]["prompt"] == "Close: the frog blinks"


def test_missing_checkpoint_file(tmp_path):
    with pytest.raises(SystemExit) as exc_info:
        main(["--dry-run", "--checkpoint", str(tmp_path / "nope.json"), "--output-dir", str(tmp_path)])
    assert exc_info.value.code == 1
