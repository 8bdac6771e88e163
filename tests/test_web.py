"""Tests for the FastAPI phase endpoints and their SSE streams."""

import json
import threading
import time

import pytest
from fastapi.testclient import TestClient

from conftest import FROG_CONCEPT, FROG_PLAN, FakeGateway, frog_structured
from reelforge import web
from reelforge.db import SqliteArtifactRecorder
from reelforge.events import EventType, ProgressEmitter
from reelforge.schemas import (
    Checkpoint,
    Clip,
    Phase,
    ReferenceArtifact,
    StudioConfig,
)


@pytest.fixture()
def gateway():
    return FakeGateway(structured=frog_structured())


@pytest.fixture()
def config(tmp_path):
    return StudioConfig(output_dir=str(tmp_path))


@pytest.fixture()
def client(gateway, config, monkeypatch):
    monkeypatch.setattr(web, "load_studio_config", lambda: config)
    recorder = SqliteArtifactRecorder(":memory:")
    web.set_gateway(gateway)
    web.set_recorder(recorder)
    yield TestClient(web.app)
    web.set_gateway(None)
    web.set_recorder(None)
    recorder.close()


def _events(response):
    """Parse an SSE body into (event name, payload) pairs."""
    out = []
    for block in response.text.strip().split("\n\n"):
        lines = dict(line.split(": ", 1) for line in block.splitlines())
        out.append((lines["event"], json.loads(lines["data"])))
    return out


def _final_checkpoint(response):
    name, payload = _events(response)[-1]
    assert name == "checkpoint"
    return payload["data"]["checkpoint"]


def _waiting_at(phase, **kw):
    return Checkpoint(
        session_id="web-1",
        phase=phase,
        prompt="a frog crosses a pond",
        concept=FROG_CONCEPT,
        shots=FROG_PLAN.shots,
        characters=FROG_PLAN.characters,
        **kw,
    ).model_dump(mode="json")


# ─── Health / auth ────────────────────────────────────────────


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"status": "ok"}


def test_api_key_required_when_configured(client, config):
    config.api_keys = ["sesame"]
    assert client.get("/api/sessions").status_code == 401
    assert client.get("/api/sessions", headers={"X-API-Key": "wrong"}).status_code == 401
    assert client.get("/api/sessions", headers={"X-API-Key": "sesame"}).status_code == 200


# ─── /api/generate ───────────────────────────────────────────


def test_generate_streams_to_mood_board_review(client):
    r = client.post("/api/generate", json={"prompt": "a frog crosses a pond"})
    assert r.status_code == 200
    assert r.headers["content-type"].startswith("text/event-stream")
    events = _events(r)
    seqs = [payload["seq"] for _, payload in events]
    assert seqs == sorted(seqs)
    assert events[0][0] == "stage-start"
    cp = _final_checkpoint(r)
    assert cp["phase"] == "mood_board_review"
    assert cp["concept"]["title"] == "Pond at Dusk"
    assert len(cp["mood_board"]) == 3


def test_generate_records_session(client):
    r = client.post("/api/generate", json={"prompt": "a frog crosses a pond"})
    session_id = _final_checkpoint(r)["session_id"]
    sessions = client.get("/api/sessions").json()
    assert [s["session_id"] for s in sessions] == [session_id]
    row = client.get(f"/api/sessions/{session_id}").json()
    assert row["phase"] == "mood_board_review"


def test_generate_empty_prompt(client):
    assert client.post("/api/generate", json={"prompt": "   "}).status_code == 400


def test_generate_rejects_advanced_checkpoint(client):
    body = {"prompt": "x", "checkpoint": _waiting_at(Phase.REVIEWING)}
    assert client.post("/api/generate", json=body).status_code == 400


def test_generate_invalid_options(client):
    body = {"prompt": "x", "options": {"duration": 5}}
    assert client.post("/api/generate", json=body).status_code == 422


def test_generate_planning_failure_streams_error_checkpoint(client, gateway):
    gateway.structured["Concept"] = RuntimeError("model offline")
    r = client.post("/api/generate", json={"prompt": "a frog"})
    names = [name for name, _ in _events(r)]
    assert "pipeline-error" in names
    cp = _final_checkpoint(r)
    assert cp["phase"] == "error"
    assert cp["failed_phase"] == "idea"
    assert "model offline" in cp["error"]["summary"]


# ─── Gate continuations ──────────────────────────────────────


def test_continue_generation_to_character_review(client):
    mood = [ReferenceArtifact(ref="img://mood", kind="mood_board")]
    body = {"checkpoint": _waiting_at(Phase.MOOD_BOARD_REVIEW, mood_board=mood)}
    cp = _final_checkpoint(client.post("/api/continue-generation", json=body))
    assert cp["phase"] == "character_review"
    assert set(cp["portraits"]) == {"Pip", "Heron"}


def test_continue_wrong_gate(client):
    body = {"checkpoint": _waiting_at(Phase.MOOD_BOARD_REVIEW)}
    r = client.post("/api/generate-videos", json=body)
    assert r.status_code == 400
    assert "mood_board_review" in r.json()["detail"]


def test_continue_invalid_input(client):
    body = {
        "checkpoint": _waiting_at(Phase.REVIEWING),
        "input": {"shots": [{"index": 9, "prompt": "new"}]},
    }
    assert client.post("/api/generate-videos", json=body).status_code == 400


def test_continue_invalid_checkpoint(client):
    body = {"checkpoint": {"phase": "nowhere"}}
    assert client.post("/api/continue-storyboard", json=body).status_code == 400


def test_continue_storyboard_needs_portrait_names(client):
    portraits = {
        "Pip": ReferenceArtifact(ref="img://pip", kind="portrait"),
        "Heron": ReferenceArtifact(ref="img://heron", kind="portrait"),
    }
    body = {"checkpoint": _waiting_at(Phase.CHARACTER_REVIEW, portraits=portraits)}
    cp = _final_checkpoint(client.post("/api/continue-storyboard", json=body))
    assert cp["phase"] == "reviewing"
    assert [f["shot_index"] for f in cp["frames"]] == [1, 2, 3]


def test_generate_videos_to_complete(client):
    body = {"checkpoint": _waiting_at(Phase.REVIEWING)}
    r = client.post("/api/generate-videos", json=body)
    names = [name for name, _ in _events(r)]
    assert "pipeline-complete" in names
    cp = _final_checkpoint(r)
    assert cp["phase"] == "complete"
    assert sorted(cp["clips"]) == ["1", "2", "3"]


# ─── Rerun ───────────────────────────────────────────────────


def _complete_checkpoint():
    clips = {
        i: Clip(shot_index=i, ref=f"vid://old-{i}", prompt="p", duration=8, aspect_ratio="16:9")
        for i in (1, 2, 3)
    }
    return _waiting_at(Phase.COMPLETE, clips=clips)


def test_rerun_shot(client):
    body = {"checkpoint": _complete_checkpoint(), "shot_index": 2, "prompt": "Pip bows"}
    cp = _final_checkpoint(client.post("/api/rerun-shot", json=body))
    assert cp["clips"]["1"]["ref"] == "vid://old-1"
    assert cp["clips"]["2"]["ref"] != "vid://old-2"
    assert cp["shots"][1]["prompt"] == "Pip bows"


def test_rerun_requires_rendered_session(client):
    body = {"checkpoint": _waiting_at(Phase.REVIEWING), "shot_index": 1}
    assert client.post("/api/rerun-shot", json=body).status_code == 400


def test_rerun_unknown_shot(client):
    body = {"checkpoint": _complete_checkpoint(), "shot_index": 7}
    assert client.post("/api/rerun-shot", json=body).status_code == 400


# ─── JSON helpers ────────────────────────────────────────────


def test_refine_mood_board(client):
    body = {
        "checkpoint": _waiting_at(Phase.MOOD_BOARD_REVIEW),
        "image_ref": "img://mood",
        "modifier": "Warmer",
    }
    r = client.post("/api/refine-mood-board", json=body)
    assert r.status_code == 200
    assert r.json()["references"] == ["img://mood"]


def test_refine_unknown_modifier(client):
    body = {
        "checkpoint": _waiting_at(Phase.MOOD_BOARD_REVIEW),
        "image_ref": "img://mood",
        "modifier": "Sepia",
    }
    assert client.post("/api/refine-mood-board", json=body).status_code == 400


def test_refine_provider_failure(client, gateway):
    gateway.fail_image = lambda prompt, refs: True
    body = {
        "checkpoint": _waiting_at(Phase.MOOD_BOARD_REVIEW),
        "image_ref": "img://mood",
        "modifier": "Warmer",
    }
    assert client.post("/api/refine-mood-board", json=body).status_code == 502


def test_regenerate_portrait(client):
    body = {"checkpoint": _waiting_at(Phase.CHARACTER_REVIEW), "character_name": "Heron"}
    r = client.post("/api/regenerate-portrait", json=body)
    assert r.status_code == 200
    assert r.json()["name"] == "Heron"
    assert r.json()["portrait"]["kind"] == "portrait"


def test_regenerate_portrait_unknown_character(client):
    body = {"checkpoint": _waiting_at(Phase.CHARACTER_REVIEW), "character_name": "Newt"}
    assert client.post("/api/regenerate-portrait", json=body).status_code == 400


def test_get_missing_session(client):
    assert client.get("/api/sessions/nope").status_code == 404


# ─── Stream framing ──────────────────────────────────────────


def test_crashed_worker_terminal_event_continues_seq(client, monkeypatch):
    def crash(cp, inp, *, sinks, **kw):
        em = ProgressEmitter(cp.session_id, sinks=sinks)
        em.stage_start("idea", "Planning")
        em.log("idea", "thinking")
        raise RuntimeError("worker lost")

    monkeypatch.setattr(web.machine, "advance", crash)
    r = client.post("/api/generate", json={"prompt": "a frog"})
    events = _events(r)
    seqs = [payload["seq"] for _, payload in events]
    assert seqs == [1, 2, 3]
    name, payload = events[-1]
    assert name == "pipeline-error"
    assert payload["data"]["terminal"] is True
    assert "worker lost" in payload["message"]


def test_watch_follows_session_until_checkpoint(client):
    em = ProgressEmitter("watch-1", sinks=[web.event_bus])

    def publish():
        deadline = time.monotonic() + 5
        while not web.event_bus._subscribers and time.monotonic() < deadline:
            time.sleep(0.01)
        em.log("scenes", "someone else's invocation")
        em.emit(EventType.CHECKPOINT, "pipeline", "done", checkpoint={})

    worker = threading.Thread(target=publish)
    worker.start()
    r = client.get("/sse/watch-1")
    worker.join()
    assert [name for name, _ in _events(r)] == ["stage-log", "checkpoint"]
