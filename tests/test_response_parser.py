"""
Tests for parsing structured model output.

Run with:
$ pytest -q
"""

import pytest

from lifedesk.agent.response_parser import (
    extract_json_object,
    parse_expenses,
    parse_plan,
    parse_reflection,
)
from lifedesk.core.errors import ModelFormatError


def test_extract_json_from_fenced_prose() -> None:
    """Fences and surrounding chatter are cut away."""

    content = 'Sure! Here is the plan:\n```json\n{"goal": "x", "reply": "hi"}\n```\nAnything else?'
    assert extract_json_object(content) == '{"goal": "x", "reply": "hi"}'


def test_extract_json_ignores_braces_inside_strings() -> None:
    """Braces in string values do not end the object early."""

    content = 'prefix {"reply": "use {{step1.data.id}} here", "steps": []} suffix'
    assert extract_json_object(content) == '{"reply": "use {{step1.data.id}} here", "steps": []}'


def test_parse_plan_normalizes_steps() -> None:
    """Missing ids are filled, tool / args aliases and scalar dependencies are accepted."""

    output = parse_plan(
        """
        {"goal": "organize",
         "thoughts": "one thought",
         "steps": [
            {"description": "make parent", "tool": "create_task",
             "args": {"title": "Trip", "level": "main"}},
            {"id": "s2", "description": "make child", "action": "create_task",
             "params": {"title": "Book", "level": "sub", "parentId": "{{step1.data.id}}"},
             "depends_on": 1},
            {"description": "just think", "action": ""}
         ]}
        """
    )
    first, second, third = output.steps
    assert first.id == "step1"
    assert first.action == "create_task"
    assert first.params == {"title": "Trip", "level": "main"}
    assert second.id == "s2"
    assert second.depends_on == ["1"]
    assert third.id == "step3"
    assert third.action is None
    assert output.thoughts == ["one thought"]
    assert output.reply is None


def test_parse_plan_with_reply_only() -> None:
    """A plan without steps is fine when it carries a reply."""

    output = parse_plan('{"goal": "chat", "steps": [], "reply": "Hello!"}')
    assert output.steps == []
    assert output.reply == "Hello!"


@pytest.mark.parametrize(
    "content",
    [
        "I think you should rest.",
        '{"goal": "nothing", "steps": []}',
        '["not", "an", "object"]',
        '{"steps": "create_task"}',
    ],
)
def test_parse_plan_rejects_unusable_output(content: str) -> None:
    """Unparseable or empty plans raise ModelFormatError carrying the raw text."""

    try:
        parse_plan(content)
    except ModelFormatError as exc:
        assert exc.raw == content
    else:  # pragma: no cover
        raise AssertionError("ModelFormatError was not raised")


def test_parse_reflection_accepts_scalar_lists() -> None:
    """A single string where a list is expected becomes a one-item list."""

    output = parse_reflection(
        '{"summary": "ok", "success": true, "issues": null, "reply": "Done", '
        '"learnings": "Prefers mornings"}'
    )
    assert output.success is True
    assert output.issues == []
    assert output.learnings == ["Prefers mornings"]
    assert output.reply == "Done"


def test_parse_expenses() -> None:
    """Expense output needs a reply or at least one record."""

    output = parse_expenses('{"reply": "", "expenses": [{"amount": 3, "category": "Coffee"}]}')
    assert output.expenses == [{"amount": 3, "category": "Coffee"}]

    with pytest.raises(ModelFormatError):
        parse_expenses('{"reply": "  ", "expenses": []}')
