"""
Snapshot of the user's actionable state, used to ground the planner.

The snapshot is rebuilt on every invocation from read-only backend queries.  Sections are fetched
concurrently and independently: a section whose query fails, or whose data cannot be shaped, is
logged, left empty and listed in :attr:`ContextSnapshot.failed_sections`.  The rest of the
snapshot is still produced.
"""

import asyncio
import datetime
import logging
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    Iterable,
    List,
    Optional,
    TypeVar,
)

from pydantic import Field

from lifedesk.actions.backend import ActionBackend
from lifedesk.actions.params import TaskLevel
from lifedesk.common import utcnow
from lifedesk.context.formatters import (
    NO_PRIORITY,
    days_between,
    format_created_at,
    format_deadline,
    format_priority,
    format_relative_time,
    is_overdue,
    is_urgent,
    parse_date,
)
from lifedesk.core.schema import CamelModel

logger = logging.getLogger(__name__)

T = TypeVar("T")

SECTION_TASKS = "tasks"
SECTION_TODAY_SCHEDULE = "today_schedule"
SECTION_WEEK_SCHEDULE = "week_schedule"
SECTION_QUESTS = "quests"
SECTION_HABITS = "habits"
SECTION_COMPLETIONS = "recent_completions"
SECTIONS = (
    SECTION_TASKS,
    SECTION_TODAY_SCHEDULE,
    SECTION_WEEK_SCHEDULE,
    SECTION_QUESTS,
    SECTION_HABITS,
    SECTION_COMPLETIONS,
)

RECENT_COMPLETION_DAYS = 30

_FAILED = object()


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------
class TaskNode(CamelModel):
    """A task with its subtasks, pre-formatted for display."""

    id: Optional[int] = None
    title: str
    description: Optional[str] = None
    priority: str = NO_PRIORITY
    deadline: Optional[str] = None
    due: Optional[datetime.date] = None
    created: str = ""
    age_in_days: int = 0
    is_unclear: bool = False
    unclear_reason: Optional[str] = None
    level: int = 1
    children: List["TaskNode"] = Field(default_factory=list)


class TaskSections(CamelModel):
    routines: List[TaskNode] = Field(default_factory=list)
    long_term_tasks: List[TaskNode] = Field(default_factory=list)
    short_term_tasks: List[TaskNode] = Field(default_factory=list)


class Completion(CamelModel):
    """A task finished recently."""

    title: str
    type: Optional[str] = None
    level: int = 1
    main_task_title: Optional[str] = None
    comment: Optional[str] = None
    completed_at: str = ""
    days_ago: int = 0


class ContextSummary(CamelModel):
    total_active_tasks: int = 0
    unclear_tasks_count: int = 0
    overdue_tasks_count: int = 0
    urgent_tasks_count: int = 0


class ContextSnapshot(CamelModel):
    """Structured view of the workspace at one point in time."""

    today: datetime.date
    timestamp: datetime.datetime = Field(default_factory=utcnow)
    tasks: TaskSections = Field(default_factory=TaskSections)
    summary: ContextSummary = Field(default_factory=ContextSummary)
    today_schedule: List[Dict[str, Any]] = Field(default_factory=list)
    week_schedule: Dict[str, List[Dict[str, Any]]] = Field(default_factory=dict)
    quests: List[Dict[str, Any]] = Field(default_factory=list)
    habits: List[Dict[str, Any]] = Field(default_factory=list)
    recent_completions: List[Completion] = Field(default_factory=list)
    failed_sections: List[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Building
# ---------------------------------------------------------------------------
async def build_snapshot(
    backend: ActionBackend, today: Optional[datetime.date] = None
) -> ContextSnapshot:
    """
    Query *backend* and assemble a :class:`ContextSnapshot`.

    Parameters
    ----------
    backend:
        Source of tasks, schedule, quests, habits and completions.
    today:
        Reference date for deadlines and the schedule (defaults to the local date).

    Returns
    -------
    ContextSnapshot
        Never raises for a failing or malformed section; see ``failed_sections``.
    """
    today = today or datetime.date.today()
    week_start = today - datetime.timedelta(days=today.weekday())
    since = today - datetime.timedelta(days=RECENT_COMPLETION_DAYS)

    raw = await asyncio.gather(
        _section(SECTION_TASKS, backend.list_tasks()),
        _section(SECTION_TODAY_SCHEDULE, backend.get_day_schedule(today)),
        _section(SECTION_WEEK_SCHEDULE, backend.get_week_schedule(week_start)),
        _section(SECTION_QUESTS, backend.list_quests()),
        _section(SECTION_HABITS, backend.get_today_habits()),
        _section(SECTION_COMPLETIONS, backend.list_completions(since)),
    )
    results = dict(zip(SECTIONS, raw))
    failed = [name for name in SECTIONS if results[name] is _FAILED]

    def shape(name: str, build: Callable[[Any], T], default: T) -> T:
        value = results[name]
        if value is _FAILED:
            return default
        try:
            return build(value)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Context section '%s' malformed: %s", name, exc)
            failed.append(name)
            return default

    sections = shape(SECTION_TASKS, lambda groups: _task_sections(groups, today), TaskSections())
    dated = sections.long_term_tasks + sections.short_term_tasks
    summary = ContextSummary(
        total_active_tasks=_count(_walk(sections.routines + dated)),
        unclear_tasks_count=_count(
            n for n in _walk(sections.routines + dated) if n.is_unclear
        ),
        overdue_tasks_count=_count(n for n in _walk(dated) if is_overdue(n.due, today)),
        urgent_tasks_count=_count(n for n in _walk(dated) if is_urgent(n.due, today)),
    )

    return ContextSnapshot(
        today=today,
        tasks=sections,
        summary=summary,
        today_schedule=shape(SECTION_TODAY_SCHEDULE, _records, []),
        week_schedule=shape(SECTION_WEEK_SCHEDULE, _week, {}),
        quests=shape(SECTION_QUESTS, _active_quests, []),
        habits=shape(SECTION_HABITS, _records, []),
        recent_completions=shape(
            SECTION_COMPLETIONS, lambda rows: _completions(rows, today), []
        ),
        failed_sections=[name for name in SECTIONS if name in failed],
    )


async def _section(name: str, query: Awaitable[Any]) -> Any:
    try:
        return await query
    except Exception as exc:  # noqa: BLE001
        logger.warning("Context section '%s' unavailable: %s", name, exc)
        return _FAILED


def _records(value: Any) -> List[Dict[str, Any]]:
    if not isinstance(value, list) or not all(isinstance(item, dict) for item in value):
        raise TypeError(f"expected a list of objects, got {type(value).__name__}")
    return value


def _week(value: Any) -> Dict[str, List[Dict[str, Any]]]:
    if not isinstance(value, dict):
        raise TypeError(f"expected an object keyed by date, got {type(value).__name__}")
    return {str(day): _records(blocks) for day, blocks in value.items()}


def _active_quests(value: Any) -> List[Dict[str, Any]]:
    return [q for q in _records(value) if q.get("status", "active") == "active"]


def _task_sections(groups: Any, today: datetime.date) -> TaskSections:
    if not isinstance(groups, dict):
        raise TypeError(f"expected tasks grouped by horizon, got {type(groups).__name__}")
    return TaskSections(
        routines=_build_trees(_records(groups.get("routines") or []), today, show_deadline=False),
        long_term_tasks=_build_trees(_records(groups.get("longTermTasks") or []), today),
        short_term_tasks=_build_trees(_records(groups.get("shortTermTasks") or []), today),
    )


def _completions(rows: Any, today: datetime.date) -> List[Completion]:
    completions: List[Completion] = []
    for row in _records(rows):
        done = parse_date(row.get("completedAt"))
        completions.append(
            Completion(
                title=str(row.get("taskTitle") or row.get("title") or "(untitled)"),
                type=row.get("taskType") or None,
                level=task_level(row.get("taskLevel")),
                main_task_title=row.get("mainTaskTitle") or None,
                comment=row.get("completionComment") or None,
                completed_at=format_relative_time(done, today) if done else "",
                days_ago=days_between(done, today) if done else 0,
            )
        )
    completions.sort(key=lambda c: c.days_ago)
    return completions


def task_level(value: Any) -> int:
    """
    Storage ordinal of a task level.

    Accepts ordinals (``2``, ``"2"``) and level names (``"sub"``); anything else is a main task.
    """
    if isinstance(value, bool):
        return 1
    if isinstance(value, int):
        return value if 1 <= value <= 3 else 1
    if isinstance(value, str):
        text = value.strip().lower()
        if text.isdigit():
            return task_level(int(text))
        try:
            return TaskLevel(text).ordinal
        except ValueError:
            return 1
    return 1


def _build_trees(
    tasks: List[Dict[str, Any]], today: datetime.date, show_deadline: bool = True
) -> List[TaskNode]:
    """Arrange a flat task list into trees by ``parentId``; orphans become roots."""
    ids = {t.get("id") for t in tasks if t.get("id") is not None}
    children: Dict[Any, List[Dict[str, Any]]] = {}
    roots: List[Dict[str, Any]] = []
    for task in tasks:
        parent = task.get("parentId")
        if parent is not None and parent in ids and parent != task.get("id"):
            children.setdefault(parent, []).append(task)
        else:
            roots.append(task)

    def build(task: Dict[str, Any], seen: frozenset) -> TaskNode:
        due = parse_date(task.get("deadline"))
        created = parse_date(task.get("createdAt"))
        node = TaskNode(
            id=task.get("id"),
            title=str(task.get("title") or "(untitled)"),
            description=task.get("description") or None,
            priority=format_priority(task.get("priority")),
            deadline=format_deadline(due, today) if show_deadline and due else None,
            due=due if show_deadline else None,
            created=format_created_at(created, today) if created else "",
            age_in_days=days_between(created, today) if created else 0,
            is_unclear=bool(task.get("isUnclear")),
            unclear_reason=task.get("unclearReason") or None,
            level=task_level(task.get("level")),
        )
        task_id = task.get("id")
        if task_id is not None and task_id not in seen:
            node.children = [build(c, seen | {task_id}) for c in children.get(task_id, [])]
        return node

    return [build(task, frozenset()) for task in roots]


def _walk(nodes: Iterable[TaskNode]) -> Iterable[TaskNode]:
    for node in nodes:
        yield node
        yield from _walk(node.children)


def _count(nodes: Iterable[Any]) -> int:
    return sum(1 for _ in nodes)


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------
def render_markdown(snapshot: ContextSnapshot) -> str:
    """Human-readable rendering of *snapshot* for the planner prompt."""
    lines: List[str] = ["# Workspace context", ""]
    failed = set(snapshot.failed_sections)

    summary = snapshot.summary
    lines += [
        "## Overview",
        f"- Active tasks: {summary.total_active_tasks}",
        f"- Unclear tasks: {summary.unclear_tasks_count}",
        f"- Overdue tasks: {summary.overdue_tasks_count}",
        f"- Urgent tasks (due within 3 days): {summary.urgent_tasks_count}",
        "",
        "## Current tasks",
        "",
    ]
    if SECTION_TASKS in failed:
        lines += ["_Tasks are currently unavailable._", ""]
    for heading, nodes in (
        ("Routines", snapshot.tasks.routines),
        ("Long-term tasks", snapshot.tasks.long_term_tasks),
        ("Short-term tasks", snapshot.tasks.short_term_tasks),
    ):
        if nodes:
            lines += [f"### {heading} ({len(nodes)} main tasks)", ""]
            lines += _render_tree(nodes)

    lines += [f"## Today's schedule ({snapshot.today.isoformat()})", ""]
    if SECTION_TODAY_SCHEDULE in failed:
        lines.append("_Schedule is currently unavailable._")
    elif snapshot.today_schedule:
        lines += [_render_block(b) for b in snapshot.today_schedule]
    else:
        lines.append("Nothing scheduled.")
    lines.append("")

    lines += ["## This week", ""]
    if SECTION_WEEK_SCHEDULE in failed:
        lines.append("_Week schedule is currently unavailable._")
    else:
        for day, blocks in sorted(snapshot.week_schedule.items()):
            titles = ", ".join(str(b.get("taskTitle") or b.get("title") or "?") for b in blocks)
            lines.append(f"- {day}: {len(blocks)} blocks" + (f" ({titles})" if titles else ""))
    lines.append("")

    lines += ["## Active quests", ""]
    if SECTION_QUESTS in failed:
        lines.append("_Quests are currently unavailable._")
    for index, quest in enumerate(snapshot.quests, start=1):
        line = f"{index}. **{quest.get('title', '(untitled)')}**"
        if quest.get("type"):
            line += f" [{quest['type']}]"
        if quest.get("targetDate"):
            line += f" target {quest['targetDate']}"
        lines.append(line)
        if quest.get("why"):
            lines.append(f"   - Why: {quest['why']}")
    lines.append("")

    lines += ["## Habit check-ins today", ""]
    if SECTION_HABITS in failed:
        lines.append("_Habits are currently unavailable._")
    elif snapshot.habits:
        for record in snapshot.habits:
            line = f"- routine {record.get('routineId', '?')}"
            if record.get("description"):
                line += f": {record['description']}"
            lines.append(line)
    else:
        lines.append("No check-ins yet.")
    lines.append("")

    lines += [f"## Completed in the last {RECENT_COMPLETION_DAYS} days", ""]
    if SECTION_COMPLETIONS in failed:
        lines.append("_Completions are currently unavailable._")
    elif snapshot.recent_completions:
        for done in snapshot.recent_completions:
            line = f"- {done.title}"
            if done.main_task_title:
                line += f" (part of {done.main_task_title})"
            if done.completed_at:
                line += f", {done.completed_at}"
            if done.comment:
                line += f": {done.comment}"
            lines.append(line)
    else:
        lines.append("Nothing completed recently.")
    lines.append("")

    lines += ["---", f"Current time: {snapshot.timestamp.isoformat()}"]
    return "\n".join(lines) + "\n"


def _render_tree(nodes: List[TaskNode], indent: int = 0) -> List[str]:
    prefix = "   " * indent
    lines: List[str] = []
    for number, node in enumerate(nodes, start=1):
        line = f"{prefix}**{number}. {node.title}**"
        if node.id is not None:
            line += f" (ID:{node.id})"
        if node.priority != NO_PRIORITY:
            line += f" [{node.priority}]"
        if node.deadline:
            line += f" due {node.deadline}"
        elif node.created:
            line += f" ({node.created})"
        if node.is_unclear:
            line += " [unclear]"
        lines.append(line)
        if node.description:
            lines.append(f"{prefix}   - Description: {node.description}")
        if node.unclear_reason:
            lines.append(f"{prefix}   - Unclear because: {node.unclear_reason}")
        if node.children:
            lines += _render_tree(node.children, indent + 1)
        lines.append("")
    return lines


def _render_block(block: Dict[str, Any]) -> str:
    span = f"{block.get('startTime', '?')}-{block.get('endTime', '?')}"
    title = block.get("taskTitle") or block.get("title") or "(untitled)"
    line = f"- {span} {title}"
    if block.get("parentTitle"):
        line += f" ({block['parentTitle']})"
    if block.get("status"):
        line += f" [{block['status']}]"
    return line
