"""Rubric templates seeded into an empty store."""

DEFAULT_TEMPLATES = [
    {
        "name": "General Pitch (3–5 min)",
        "description": "A balanced rubric for short spoken pitches.",
        "target_duration_seconds": 240,
        "max_duration_seconds": 360,
        "criteria": [
            {
                "name": "Hook/Opening",
                "description": "Does the opening capture attention in the first sentences?",
            },
            {
                "name": "Clarity",
                "description": "Is the problem and solution explained in plain language?",
            },
            {
                "name": "Structure",
                "description": "Does the pitch follow a logical order that is easy to follow?",
            },
            {
                "name": "Conciseness",
                "description": "Is every sentence necessary, without filler or repetition?",
            },
            {
                "name": "Confidence/Delivery",
                "description": "Does the speaker sound confident, with steady pacing and few fillers?",
            },
            {
                "name": "Call to Action",
                "description": "Does the pitch end with a clear, specific ask?",
            },
        ],
    },
]


def template_rubric_json(template: dict) -> dict:
    return {
        "name": template["name"],
        "description": template.get("description"),
        "criteria": [
            {"id": f"criterion_{index + 1}", "weight": 1.0, **criterion}
            for index, criterion in enumerate(template["criteria"])
        ],
        "target_duration_seconds": template.get("target_duration_seconds"),
        "max_duration_seconds": template.get("max_duration_seconds"),
        "guiding_questions": [],
    }
