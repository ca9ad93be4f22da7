from pitchpractice.backend.rubric_coercion import coerce_rubric, rubric_to_json


def test_aliases_are_normalized():
    parsed = coerce_rubric(
        {
            "title": "Sales Pitch",
            "items": [
                {"label": "Opening", "desc": "Strong start", "weight": 2},
                {"key": "Value", "details": "Clear value"},
                "Close",
            ],
        }
    )

    rubric = parsed.rubric
    assert rubric.name == "Sales Pitch"
    assert [c.name for c in rubric.criteria] == ["Opening", "Value", "Close"]
    assert rubric.criteria[0].description == "Strong start"
    assert rubric.criteria[0].weight == 2.0
    assert rubric.criteria[2].weight == 1.0
    assert parsed.warnings == []


def test_coercion_is_idempotent_on_valid_rubric():
    first = coerce_rubric(
        {
            "name": "Demo",
            "criteria": [
                {"name": "A", "description": "a", "scoringGuide": "1-10"},
                {"name": "B", "description": "b"},
                {"name": "C", "description": "c"},
            ],
            "target_duration_seconds": 120,
            "guiding_questions": ["Why now?"],
        }
    )
    second = coerce_rubric(rubric_to_json(first.rubric))

    assert second.rubric == first.rubric
    assert second.warnings == []


def test_non_object_input_gets_placeholders():
    parsed = coerce_rubric(["not", "a", "dict"])

    assert len(parsed.rubric.criteria) == 3
    assert any("fewer than 3 criteria" in warning for warning in parsed.warnings)


def test_unnamed_items_are_dropped_with_warning():
    parsed = coerce_rubric({"criteria": [{"description": "no name"}, {"name": "A"}, 42]})

    assert [c.name for c in parsed.rubric.criteria] == ["A"]
    assert any("Dropped 2" in warning for warning in parsed.warnings)
    assert any("found 1" in warning for warning in parsed.warnings)


def test_invalid_durations_are_ignored():
    parsed = coerce_rubric(
        {"criteria": ["A", "B", "C"], "target_duration_seconds": -5, "max_duration_seconds": "ten"}
    )

    assert parsed.rubric.target_duration_seconds is None
    assert parsed.rubric.max_duration_seconds is None
