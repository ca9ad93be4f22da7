import json
from datetime import timedelta

from pitchpractice.backend.models import utc_now


AUDIO = b"\x1aE\xdf\xa3" + b"\x00" * 9000


def _upload(client, audio=AUDIO, headers=None, **form):
    data = {"session_id": "session-1", **form}
    return client.post(
        "/api/runs/create",
        files={"audio": ("pitch.webm", audio, "audio/webm")},
        data=data,
        headers=headers or {},
    )


def test_health(client):
    assert client.get("/health").json() == {"status": "ok", "storage": "memory"}


def test_create_run_uses_default_template(client, store, object_storage):
    response = _upload(client)

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "uploaded"
    assert body["audio_path"] == f"session-1/{body['id']}.webm"
    assert object_storage.objects[body["audio_path"]] == AUDIO
    run = store.get_run(body["id"])
    assert run.rubric_id == store.get_default_template().id
    assert run.user_id is None


def test_create_run_with_snapshot_and_owner(client, store, alice):
    snapshot = {"title": "Demo day", "items": [{"label": "Hook"}, {"label": "Ask", "weight": "2"}]}

    response = _upload(client, headers=alice, rubric_json=json.dumps(snapshot), duration_ms="42000")

    run = store.get_run(response.json()["id"])
    assert run.user_id == "user-alice"
    assert run.rubric_id is None
    assert run.duration_ms == 42000
    assert [c["name"] for c in run.rubric_snapshot_json["criteria"]] == ["Hook", "Ask"]


def test_tiny_recording_is_rejected_and_discarded(client, store):
    response = _upload(client, audio=b"\x00" * 100)

    assert response.status_code == 400
    assert response.json()["error"] == "Recording was empty or silent."
    assert store.list_runs(session_id="session-1") == []


def test_missing_session_is_400(client):
    response = client.post("/api/runs/create", files={"audio": ("a.webm", AUDIO, "audio/webm")})

    assert response.status_code == 400
    assert response.json()["error"] == "Session ID is required"


def test_invalid_snapshot_json_is_400(client, store):
    response = _upload(client, rubric_json="{broken")

    assert response.status_code == 400
    assert store.list_runs(session_id="session-1") == []


def test_upload_failure_removes_run(client, store, object_storage):
    object_storage.fail_uploads = RuntimeError("403 Forbidden: bucket access denied")

    response = _upload(client)

    assert response.status_code == 500
    body = response.json()
    assert body["ok"] is False
    assert body["error"] == "Failed to upload audio"
    assert body["details"].startswith("Storage")
    assert store.list_runs(session_id="session-1") == []


def test_run_detail_is_not_cached(client, run_factory):
    run = run_factory()

    response = client.get(f"/api/runs/{run.id}")

    assert response.headers["cache-control"] == "no-store"
    payload = response.json()["run"]
    assert payload["audio_url"] == "https://storage.test/session-1/run.webm?ttl=3600"
    assert payload["transcript"].startswith("We help teams")

    missing = client.get("/api/runs/nope")
    assert missing.status_code == 404
    assert missing.headers["cache-control"] == "no-store"


def test_audio_url_respects_ownership(client, run_factory, alice, bob):
    run = run_factory(user_id="user-alice")

    assert client.get(f"/api/runs/{run.id}/audio-url", headers=bob).status_code == 403
    body = client.get(f"/api/runs/{run.id}/audio-url", headers=alice).json()
    assert body["url"].endswith("ttl=1800")


def test_list_runs_requires_auth(client, run_factory, alice):
    run_factory(user_id="user-alice")
    run_factory(user_id="user-bob")

    unauthorized = client.get("/api/runs")
    assert unauthorized.status_code == 401
    assert unauthorized.json() == {"ok": False, "error": "Unauthorized"}

    runs = client.get("/api/runs", headers=alice).json()
    assert [r["user_id"] for r in runs] == ["user-alice"]


def test_claim_run_semantics(client, store, run_factory, alice, bob):
    run = run_factory()

    first = client.post(f"/api/runs/{run.id}/claim", headers=alice)
    assert first.status_code == 200
    assert first.json()["run"]["user_id"] == "user-alice"

    again = client.post(f"/api/runs/{run.id}/claim", headers=alice)
    assert again.status_code == 200

    stolen = client.post(f"/api/runs/{run.id}/claim", headers=bob)
    assert stolen.status_code == 403
    assert store.get_run(run.id).user_id == "user-alice"


def test_claim_session_runs(client, store, run_factory, alice):
    run_factory(session_id="anon-1")
    run_factory(session_id="anon-1")
    run_factory(session_id="anon-1", user_id="user-bob")

    response = client.post("/api/runs/claim", json={"session_id": "anon-1"}, headers=alice)

    assert response.json() == {"ok": True, "claimed": 2}
    assert len(store.list_runs(user_id="user-alice")) == 2


def test_transcribe_success(client, store, object_storage, run_factory):
    run = run_factory(status="uploaded", transcript=None, words_per_minute=None)
    object_storage.objects[run.audio_path] = AUDIO

    response = client.post(f"/api/runs/{run.id}/transcribe")

    assert response.status_code == 200
    stored = store.get_run(run.id)
    assert stored.status == "transcribed"
    assert stored.transcript == "um so we help teams ship faster you know"
    assert stored.word_count == 8
    assert stored.words_per_minute == 16
    assert stored.delivery_metrics["pause_count"] == 1


def test_transcribe_failure_marks_error(client, store, llm, object_storage, run_factory):
    from pitchpractice.backend.llm_client import LLMError

    run = run_factory(status="uploaded", transcript=None)
    object_storage.objects[run.audio_path] = AUDIO
    llm.transcription = LLMError("Speech service unavailable.", kind="api")

    response = client.post(f"/api/runs/{run.id}/transcribe")

    assert response.status_code == 500
    assert response.json()["error"] == "Transcription failed"
    stored = store.get_run(run.id)
    assert stored.status == "error"
    assert stored.error_message == "Speech service unavailable."


def test_transcribe_storage_failure_marks_error(client, store, object_storage, run_factory):
    from google.api_core.exceptions import Forbidden

    run = run_factory(status="uploaded", transcript=None)
    object_storage.fail_downloads = Forbidden("bucket access denied")

    response = client.post(f"/api/runs/{run.id}/transcribe")

    assert response.status_code == 500
    assert response.json()["error"] == "Transcription failed"
    stored = store.get_run(run.id)
    assert stored.status == "error"
    assert "bucket access denied" in stored.error_message


def test_transcribe_never_leaves_run_in_intermediate_state(client, store, llm, object_storage, run_factory):
    run = run_factory(status="uploaded", transcript=None)
    object_storage.objects[run.audio_path] = AUDIO
    working = llm.transcription
    llm.transcription = KeyError("text")

    response = client.post(f"/api/runs/{run.id}/transcribe")

    assert response.status_code == 500
    assert store.get_run(run.id).status == "error"

    llm.transcription = working
    retried = client.post(f"/api/runs/{run.id}/transcribe")
    assert retried.status_code == 200
    assert store.get_run(run.id).status == "transcribed"


def test_transcribe_rejects_wrong_status(client, run_factory):
    run = run_factory(status="analyzed")

    response = client.post(f"/api/runs/{run.id}/transcribe")

    assert response.status_code == 400
    assert response.json()["details"] == "Current status: analyzed"


def test_analyze_and_failure_paths(client, store, llm, run_factory, valid_analysis):
    run = run_factory()
    llm.queue("this is not json")

    failed = client.post(f"/api/runs/{run.id}/analyze")
    assert failed.status_code == 500
    assert failed.json()["error"] == "Analysis failed"
    assert store.get_run(run.id).status == "error"

    llm.queue(valid_analysis)
    ok = client.post(f"/api/runs/{run.id}/analyze", json={"pitch_context": "Series A"})
    assert ok.status_code == 200
    assert ok.json()["run"]["status"] == "analyzed"
    assert "Series A" in llm.calls[-1]["messages"][-1]["content"]


def test_reset_clears_outputs(client, store, run_factory, valid_analysis):
    run = run_factory(status="analyzed", analysis_json=valid_analysis, plan_at_time="free")

    response = client.post(f"/api/runs/{run.id}/reset")

    assert response.json()["message"] == "Transcription reset successfully"
    stored = store.get_run(run.id)
    assert stored.status == "uploaded"
    assert stored.transcript is None and stored.analysis_json is None
    assert stored.audio_path == run.audio_path


def test_signed_upload_and_completion(client, store, run_factory):
    run = run_factory(status="uploading", audio_path=None, transcript=None)

    signed = client.post(
        "/api/uploads/sign",
        json={"session_id": "session-1", "run_id": run.id, "content_type": "audio/mp4", "chunk_index": 2},
    ).json()
    assert signed["storage_path"] == f"session-1/{run.id}/chunk_2.m4a"
    assert signed["upload_url"].startswith("https://storage.test/upload/")
    assert signed["bucket"] == "test-bucket"

    chunk = client.post(
        "/api/uploads/complete",
        json={"run_id": run.id, "path": signed["storage_path"], "chunk_index": 2, "start_ms": 0, "end_ms": 5000},
    ).json()["chunk"]
    assert chunk["status"] == "uploaded"

    whole = client.post(
        "/api/uploads/complete",
        json={"run_id": run.id, "path": f"session-1/{run.id}.webm", "duration_ms": 61000},
    )
    assert whole.json()["run"]["status"] == "uploaded"
    assert store.get_run(run.id).duration_ms == 61000


def test_upload_rejects_foreign_session_and_path(client, run_factory):
    run = run_factory(status="uploading")

    wrong_session = client.post("/api/uploads/sign", json={"session_id": "other", "run_id": run.id})
    assert wrong_session.status_code == 403

    wrong_path = client.post("/api/uploads/complete", json={"run_id": run.id, "path": "other/file.webm"})
    assert wrong_path.status_code == 400


def test_chunk_lifecycle(client, object_storage, run_factory, alice, bob):
    run = run_factory(user_id="user-alice")
    path = f"session-1/{run.id}/chunk_0.webm"

    created = client.post(
        f"/api/runs/{run.id}/chunks",
        json={"chunk_index": 0, "start_ms": 0, "end_ms": 4000, "audio_path": path},
        headers=alice,
    ).json()["chunk"]
    assert client.get(f"/api/runs/{run.id}/chunks", headers=bob).status_code == 403

    transcript_url = f"/api/runs/{run.id}/chunks/{created['id']}/transcript.txt"
    assert client.get(transcript_url, headers=alice).status_code == 404

    object_storage.objects[path] = AUDIO
    done = client.post(f"/api/runs/{run.id}/chunks/{created['id']}/transcribe", headers=alice)
    assert done.json()["chunk"]["status"] == "transcribed"

    text = client.get(transcript_url, headers=alice)
    assert text.status_code == 200
    assert text.text == "um so we help teams ship faster you know"
    assert "attachment" in text.headers["content-disposition"]

    listed = client.get(f"/api/runs/{run.id}/chunks", headers=alice).json()["chunks"]
    assert [c["chunk_index"] for c in listed] == [0]


def test_invalid_chunk_bounds(client, run_factory, alice):
    run = run_factory(user_id="user-alice")

    response = client.post(
        f"/api/runs/{run.id}/chunks",
        json={"chunk_index": 0, "start_ms": 5000, "end_ms": 1000, "audio_path": "x"},
        headers=alice,
    )

    assert response.status_code == 400


def test_progress_comparisons(client, run_factory, alice, valid_analysis):
    now = utc_now()
    second = dict(valid_analysis, summary={"overall_score": 5}, rubric_scores=[])
    run_factory(
        user_id="user-alice",
        rubric_id="r1",
        created_at=now - timedelta(days=2),
        words_per_minute=130,
        analysis_json=valid_analysis,
        delivery_metrics={"filler_count": 4},
    )
    run_factory(
        user_id="user-alice",
        rubric_id="r1",
        created_at=now - timedelta(days=1),
        words_per_minute=150,
        analysis_json=second,
        delivery_metrics={"filler_count": 2},
    )
    current = run_factory(user_id="user-alice", rubric_id="r1", created_at=now)

    body = client.get(f"/api/runs/{current.id}/progress", headers=alice).json()

    assert len(body["previous_runs"]) == 2
    assert body["comparisons"] == {
        "avg_wpm": 140.0,
        "avg_filler_words": 3.0,
        "avg_missing_sections": 0.5,
        "avg_overall_score": 6.0,
    }


def test_progress_without_history(client, run_factory, alice):
    run = run_factory(user_id="user-alice")

    body = client.get(f"/api/runs/{run.id}/progress", headers=alice).json()

    assert body == {"ok": True, "previous_runs": [], "comparisons": None}


def test_chunk_download_failure_marks_chunk_error(client, store, object_storage, run_factory, alice):
    from pitchpractice.backend.gcs_utils import StorageError

    run = run_factory(user_id="user-alice")
    chunk = client.post(
        f"/api/runs/{run.id}/chunks",
        json={"chunk_index": 0, "start_ms": 0, "end_ms": 4000, "audio_path": f"session-1/{run.id}/chunk_0.webm"},
        headers=alice,
    ).json()["chunk"]
    object_storage.fail_downloads = StorageError("GCS download failed")

    response = client.post(f"/api/runs/{run.id}/chunks/{chunk['id']}/transcribe", headers=alice)

    assert response.status_code == 500
    assert response.json()["error"] == "Chunk transcription failed"
    assert store.get_chunk(chunk["id"]).status == "error"


def test_unexpected_analysis_error_marks_run_error(client, store, llm, run_factory):
    run = run_factory()
    llm.queue(RuntimeError("socket closed"))

    response = client.post(f"/api/runs/{run.id}/analyze")

    assert response.status_code == 500
    assert response.json()["error"] == "Analysis failed"
    stored = store.get_run(run.id)
    assert stored.status == "error"
    assert stored.error_message == "socket closed"


def test_analysis_with_string_summary_is_rejected(client, store, llm, run_factory, valid_analysis):
    run = run_factory()
    llm.queue(dict(valid_analysis, summary="Good pitch"))

    response = client.post(f"/api/runs/{run.id}/analyze")

    assert response.status_code == 500
    assert "summary must be an object" in response.json()["details"]
    assert store.get_run(run.id).status == "error"


def test_progress_tolerates_malformed_history(client, run_factory, alice, valid_analysis):
    now = utc_now()
    run_factory(
        user_id="user-alice",
        rubric_id="r1",
        created_at=now - timedelta(days=2),
        analysis_json=dict(valid_analysis, summary="Good pitch", premium={"filler": 3}),
        delivery_metrics={"filler_count": 4},
    )
    run_factory(
        user_id="user-alice",
        rubric_id="r1",
        created_at=now - timedelta(days=1),
        analysis_json=["not", "an", "object"],
        delivery_metrics=None,
    )
    current = run_factory(user_id="user-alice", rubric_id="r1", created_at=now)

    response = client.get(f"/api/runs/{current.id}/progress", headers=alice)

    assert response.status_code == 200
    comparisons = response.json()["comparisons"]
    assert comparisons["avg_filler_words"] == 4.0
    assert comparisons["avg_overall_score"] is None


def test_non_finite_duration_is_400(client, store):
    response = _upload(client, duration_ms="inf")

    assert response.status_code == 400
    assert response.json()["error"] == "duration_ms must be a number"
    assert store.list_runs(session_id="session-1") == []
