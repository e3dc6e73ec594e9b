"""Prompt templates and builders for the planner, the reflector and the expense extractor."""

import datetime
import json
from typing import (
    Iterable,
    Mapping,
    Sequence,
)

from lifedesk.actions import ActionSchema
from lifedesk.agent.model_client import ChatMessage
from lifedesk.core.schema import (
    Learning,
    Message,
    Plan,
    Role,
    ToolCall,
)

PLANNER_SYSTEM_PROMPT = """\
You are lifedesk, a personal planning assistant that can THINK and ACT on the user's workspace
(tasks, schedule, habits, quests, expenses).

Make an executable plan, not an information-gathering plan:
1. Every step that changes something must name one of the available actions and give its params.
2. Use the workspace context below to find task ids instead of asking the user for them.
3. A step may use the result of an earlier step with a placeholder such as
   "{{step1.data.id}}" and must then list that step in "dependsOn".
4. If nothing needs to change, return no steps and answer in "reply".

Respond with ONE JSON object and no extra text:
{
  "goal": "<what the user wants>",
  "thoughts": ["<short reasoning>", ...],
  "steps": [
    {"id": "step1", "description": "<what this step does>", "action": "<action name or null>",
     "params": { ... }, "dependsOn": []}
  ],
  "reply": "<message for the user, or null if the actions speak for themselves>"
}
"""

REFLECTOR_SYSTEM_PROMPT = """\
You are a quality checker reviewing what an assistant just did for the user.
Judge only the final outcome: a failed call that was later fixed is not a problem, and a business
error reported by the workspace (missing task, conflict) is fine as long as the user is told.
Flag only serious issues.

Then write the reply the user will read, and list at most three durable facts about the user's
preferences or habits worth remembering (none if nothing new was learned).

Respond with ONE JSON object and no extra text:
{
  "summary": "<one or two sentences on what was attempted and achieved>",
  "success": true | false,
  "issues": ["..."],
  "suggestions": ["..."],
  "reply": "<final message to the user>",
  "learnings": ["..."]
}
"""

EXPENSE_SYSTEM_PROMPT = """\
You are an expense bookkeeping assistant.  Read the user's message and any attached receipts or
screenshots and extract every expense they contain.

Today is {today}.  Use it when the date is missing or relative ("yesterday").
Currency is a 3-letter ISO code; default to {currency} when none is visible.

Respond with ONE JSON object and no extra text:
{{
  "reply": "<short confirmation or question for the user>",
  "expenses": [
    {{"amount": 12.5, "currency": "EUR", "date": "YYYY-MM-DD", "category": "<category>",
      "description": "<merchant or item>"}}
  ]
}}
Return an empty "expenses" list if there is nothing to record.
"""

REFORMAT_INSTRUCTION = (
    "Your previous answer could not be parsed. Reply again with exactly one JSON object in the "
    "requested format and nothing else."
)

_ROLE_LABELS = {Role.USER: "User", Role.AGENT: "Assistant", Role.TOOL: "Tool"}


def format_action_catalogue(schemas: Mapping[str, ActionSchema]) -> str:
    """One line per action: ``- name(param: type, ...): description``."""
    lines = []
    for name, schema in schemas.items():
        params = ", ".join(
            f"{param}{'' if info['required'] else '?'}: {info['type']}"
            for param, info in schema["parameters"].items()
        )
        lines.append(f"- {name}({params}): {schema['description']}")
    return "\n".join(lines)


def format_history(messages: Sequence[Message]) -> str:
    return "\n".join(f"{_ROLE_LABELS[m.role]}: {m.text}" for m in messages)


def build_planner_system(
    schemas: Mapping[str, ActionSchema],
    context_markdown: str,
    learnings: Iterable[Learning] = (),
) -> str:
    prompt = PLANNER_SYSTEM_PROMPT
    prompt += "\n\nAvailable actions:\n" + format_action_catalogue(schemas)
    known = [learning.text for learning in learnings]
    if known:
        prompt += "\n\nWhat you know about the user:\n" + "\n".join(f"- {t}" for t in known)
    prompt += "\n\n" + context_markdown
    return prompt


def build_planner_request(history: Sequence[Message], text: str, image_count: int = 0) -> str:
    parts = []
    if history:
        parts.append("PREVIOUS CONVERSATION:\n" + format_history(history))
    query = text
    if image_count:
        query += f"\n\n({image_count} image(s) attached)"
    parts.append("CURRENT REQUEST:\n" + query)
    return "\n\n".join(parts)


def build_reflection_request(
    text: str, plan: Plan, tool_calls: Sequence[ToolCall], draft_reply: str | None
) -> str:
    outcomes = [
        {
            "step": call.step_id,
            "action": call.name,
            "status": call.status.value,
            "result": (call.result or {}).get("message"),
            "error": call.error,
        }
        for call in tool_calls
    ]
    results = json.dumps(outcomes, ensure_ascii=False, indent=2) if outcomes else "none"
    return "\n\n".join(
        [
            f"User request: {text}",
            f"Plan goal: {plan.goal or '(none)'}",
            "Tool results:\n" + results,
            f"Draft reply: {draft_reply or '(none)'}",
        ]
    )


def build_expense_system(today: datetime.date, currency: str = "EUR") -> str:
    return EXPENSE_SYSTEM_PROMPT.format(today=today.isoformat(), currency=currency)


def reformat_messages(request: str, raw: str) -> list[ChatMessage]:
    """Conversation for the single retry after an unparseable answer."""
    return [
        {"role": "user", "content": request},
        {"role": "assistant", "content": raw or "(empty)"},
        {"role": "user", "content": REFORMAT_INSTRUCTION},
    ]
