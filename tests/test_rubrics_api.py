import pytest


THREE_CRITERIA = {
    "criteria": [
        {"name": "Problem", "description": "Names a real pain"},
        {"name": "Solution"},
        {"name": "Ask", "weight": 2},
    ]
}


def _create(client, headers, rubric_json=THREE_CRITERIA, title="Demo day"):
    return client.post("/api/rubrics", json={"title": title, "rubric_json": rubric_json}, headers=headers)


def test_templates_are_public(client):
    templates = client.get("/api/rubrics").json()

    assert len(templates) == 1
    assert templates[0]["is_template"] is True


def test_scope_validation(client, alice):
    assert client.get("/api/rubrics?scope=everything").status_code == 400
    assert client.get("/api/rubrics?scope=mine").status_code == 401
    assert client.get("/api/rubrics?scope=mine", headers=alice).json() == []


def test_create_and_list_own_rubric(client, alice, bob):
    created = _create(client, alice)

    assert created.status_code == 201
    body = created.json()
    assert body["user_id"] == "user-alice"
    assert [c["name"] for c in body["criteria"]] == ["Problem", "Solution", "Ask"]
    assert body["rubric_json"]["title"] == "Demo day"

    mine = client.get("/api/rubrics?scope=mine", headers=alice).json()
    assert [r["id"] for r in mine] == [body["id"]]
    assert client.get("/api/rubrics?scope=mine", headers=bob).json() == []


@pytest.mark.parametrize(
    "rubric_json",
    [
        {"criteria": [{"name": "Problem"}, {"name": "Ask"}]},
        {"criteria": []},
        {"description": "nothing to score"},
    ],
)
def test_create_requires_three_criteria(client, alice, rubric_json):
    response = _create(client, alice, rubric_json=rubric_json)

    assert response.status_code == 400
    assert response.json()["error"] == "At least 3 criteria are required in rubric_json.criteria"


def test_create_requires_auth(client):
    assert _create(client, {}).status_code == 401


def test_owner_only_access(client, alice, bob):
    rubric_id = _create(client, alice).json()["id"]

    assert client.get(f"/api/rubrics/{rubric_id}", headers=alice).status_code == 200
    assert client.get(f"/api/rubrics/{rubric_id}", headers=bob).status_code == 403
    assert client.patch(f"/api/rubrics/{rubric_id}", json={"title": "Mine"}, headers=bob).status_code == 403
    assert client.delete(f"/api/rubrics/{rubric_id}", headers=bob).status_code == 403


def test_update_and_delete(client, alice):
    rubric_id = _create(client, alice).json()["id"]

    updated = client.patch(
        f"/api/rubrics/{rubric_id}",
        json={"title": "Investor pitch", "max_duration_seconds": 300},
        headers=alice,
    ).json()
    assert updated["name"] == "Investor pitch"
    assert updated["max_duration_seconds"] == 300

    bad = client.patch(f"/api/rubrics/{rubric_id}", json={"target_duration_seconds": -5}, headers=alice)
    assert bad.status_code == 400

    assert client.delete(f"/api/rubrics/{rubric_id}", headers=alice).json() == {"ok": True}
    assert client.get(f"/api/rubrics/{rubric_id}", headers=alice).status_code == 404


def test_templates_are_read_only(client, alice):
    template_id = client.get("/api/rubrics").json()[0]["id"]

    patched = client.patch(f"/api/rubrics/{template_id}", json={"title": "Hacked"}, headers=alice)
    deleted = client.delete(f"/api/rubrics/{template_id}", headers=alice)

    assert patched.status_code == 403
    assert patched.json()["error"] == "Cannot update template rubrics"
    assert deleted.json()["error"] == "Cannot delete template rubrics"


def test_parse_text_never_rejects(client):
    response = client.post("/api/rubrics/parse", json={"text": "- Clarity - be clear\n- Ask - make one", "use_ai": False})

    assert response.status_code == 200
    body = response.json()
    assert body["source"] == "deterministic"
    assert [c["name"] for c in body["rubric"]["criteria"]] == ["Clarity", "Ask"]
    assert body["warnings"]


def test_parse_uses_ai_when_available(client, llm):
    llm.queue({"name": "AI rubric", "criteria": [{"name": "A"}, {"name": "B"}, {"name": "C"}]})

    body = client.post("/api/rubrics/parse", json={"text": "Score them on A, B and C"}).json()

    assert body["source"] == "ai"
    assert body["rubric"]["name"] == "AI rubric"


def test_parse_requires_text(client):
    assert client.post("/api/rubrics/parse", json={"text": "   "}).status_code == 400
    assert client.post("/api/rubrics/parse", content=b"not json", headers={"content-type": "application/json"}).status_code == 400


def test_parse_multipart_text_file(client):
    response = client.post(
        "/api/rubrics/parse",
        files={"rubric_file": ("rubric.txt", b"1. Hook\n2. Problem\n3. Ask", "text/plain")},
        data={"use_ai": "false"},
    )

    assert response.status_code == 200
    assert [c["name"] for c in response.json()["rubric"]["criteria"]] == ["Hook", "Problem", "Ask"]


def test_generate_and_copilot_require_auth(client, llm, alice):
    assert client.post("/api/rubrics/generate", json={"messages": [{"role": "user", "content": "hi"}]}).status_code == 401

    llm.queue(
        {
            "title": "Seed pitch",
            "criteria": [
                {"name": "Team", "description": "Who"},
                {"name": "Market", "description": "How big"},
                {"name": "Ask", "description": "What"},
            ],
        }
    )
    response = client.post(
        "/api/rubrics/generate",
        json={"messages": [{"role": "user", "content": "A rubric for seed pitches"}]},
        headers=alice,
    )
    assert response.status_code == 200
    assert response.json()["draft"]["title"] == "Seed pitch"
