"""Backlog.md tools backed by the ``backlog`` CLI."""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from mcphub.gateway.command import CommandAdapter, escape
from mcphub.gateway.constants import BACKLOG_SEGMENT
from mcphub.gateway.errors import ProjectNotInitializedError
from mcphub.gateway.session_state import SessionStateStore
from mcphub.gateway.toolset import ToolContext, ToolEntry, ToolSet

_backlog_log = logging.getLogger("mcphub.gateway.tools.backlog")

PATH_DESCRIPTION = "Absolute host path of the project. Sticky: remembered for subsequent calls."
PRIORITIES = ("high", "medium", "low")

_STRING = {"type": "string"}
_STRING_LIST = {"type": "array", "items": {"type": "string"}}
_PRIORITY = {"type": "string", "enum": list(PRIORITIES)}


@dataclass(frozen=True)
class BacklogToolSpec:
    """Declarative description of one CLI-backed tool."""

    name: str
    description: str
    build: Callable[[dict[str, Any]], list[str]]
    properties: dict[str, Any] = field(default_factory=dict)
    required: tuple[str, ...] = ()
    timeout_class: str = "read"
    requires_init: bool = True
    result_key: str = "result"
    empty_message: str = ""

    def input_schema(self) -> dict[str, Any]:
        properties = dict(self.properties)
        properties["path"] = {"type": "string", "description": PATH_DESCRIPTION}
        return {"type": "object", "properties": properties, "required": list(self.required)}


def _require(arguments: dict[str, Any], key: str) -> str:
    value = arguments[key]
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"'{key}' must be a non-empty string")
    return value


def _option(flag: str, value: Any) -> list[str]:
    if value is None or value == "":
        return []
    return [flag, escape(str(value))]


def _repeated(flag: str, values: Any) -> list[str]:
    if values is None:
        return []
    if not isinstance(values, list):
        raise ValueError(f"{flag} expects a list of strings")
    tokens: list[str] = []
    for value in values:
        tokens.extend([flag, escape(str(value))])
    return tokens


def _priority(value: Any) -> list[str]:
    if value is None or value == "":
        return []
    if value not in PRIORITIES:
        raise ValueError(f"priority must be one of {', '.join(PRIORITIES)}")
    return ["--priority", value]


def _task_fields(arguments: dict[str, Any]) -> list[str]:
    return [
        *_option("--description", arguments.get("description")),
        *_option("--status", arguments.get("status")),
        *_priority(arguments.get("priority")),
        *_repeated("-a", arguments.get("assignees")),
        *_repeated("-l", arguments.get("labels")),
        *_option("--plan", arguments.get("plan")),
    ]


def _task_trailer(arguments: dict[str, Any]) -> list[str]:
    return [
        *_option("--notes", arguments.get("notes")),
        *_repeated("--dep", arguments.get("dependencies")),
        *_option("--parent", arguments.get("parent_id")),
    ]


def _build_list_tasks(arguments: dict[str, Any]) -> list[str]:
    return [
        "tasks",
        "list",
        "--plain",
        *_option("--status", arguments.get("status")),
        *_option("--assignee", arguments.get("assignee")),
        *_priority(arguments.get("priority")),
    ]


def _build_create_task(arguments: dict[str, Any]) -> list[str]:
    tokens = ["tasks", "create", escape(_require(arguments, "title"))]
    tokens += _task_fields(arguments)
    tokens += _repeated("--ac", arguments.get("acceptance_criteria"))
    tokens += _task_trailer(arguments)
    if arguments.get("is_draft"):
        tokens.append("--draft")
    return tokens


def _build_edit_task(arguments: dict[str, Any]) -> list[str]:
    tokens = ["tasks", "edit", escape(_require(arguments, "taskId"))]
    tokens += _option("--title", arguments.get("title"))
    tokens += _task_fields(arguments)
    criteria = arguments.get("acceptance_criteria")
    if criteria:
        if not isinstance(criteria, list):
            raise ValueError("acceptance_criteria expects a list of strings")
        tokens += ["--acceptance-criteria", escape(",".join(str(item) for item in criteria))]
    tokens += _task_trailer(arguments)
    return tokens


def _task_action(action: str) -> Callable[[dict[str, Any]], list[str]]:
    def build(arguments: dict[str, Any]) -> list[str]:
        return ["tasks", action, escape(_require(arguments, "taskId"))]

    return build


def _fixed(*tokens: str) -> Callable[[dict[str, Any]], list[str]]:
    def build(arguments: dict[str, Any]) -> list[str]:
        return list(tokens)

    return build


def _search(noun: str) -> Callable[[dict[str, Any]], list[str]]:
    def build(arguments: dict[str, Any]) -> list[str]:
        return [noun, "search", escape(_require(arguments, "query")), "--plain"]

    return build


def _build_create_doc(arguments: dict[str, Any]) -> list[str]:
    return [
        "doc",
        "create",
        escape(_require(arguments, "title")),
        *_option("--content", arguments.get("content")),
    ]


def _build_update_doc(arguments: dict[str, Any]) -> list[str]:
    return [
        "doc",
        "edit",
        escape(_require(arguments, "docId")),
        *_option("--title", arguments.get("title")),
        *_option("--content", arguments.get("content")),
    ]


def _build_milestone(action: str, *keys: str) -> Callable[[dict[str, Any]], list[str]]:
    def build(arguments: dict[str, Any]) -> list[str]:
        return ["milestone", action, *(escape(_require(arguments, key)) for key in keys)]

    return build


_TASK_ID = {"taskId": {"type": "string", "description": "The ID of the task"}}
_TASK_PROPERTIES: dict[str, Any] = {
    "description": _STRING,
    "status": _STRING,
    "priority": _PRIORITY,
    "assignees": _STRING_LIST,
    "labels": _STRING_LIST,
    "plan": _STRING,
    "acceptance_criteria": _STRING_LIST,
    "notes": _STRING,
    "dependencies": _STRING_LIST,
    "parent_id": _STRING,
}

BACKLOG_TOOL_SPECS: list[BacklogToolSpec] = [
    BacklogToolSpec(
        name="list-tasks",
        description="Retrieves a list of tasks from the project backlog.",
        build=_build_list_tasks,
        properties={
            "status": {"type": "string", "description": "Filter by status"},
            "assignee": {"type": "string", "description": "Filter by assignee"},
            "priority": {**_PRIORITY, "description": "Filter by priority"},
        },
        result_key="tasks",
        empty_message="No tasks found",
    ),
    BacklogToolSpec(
        name="view-task",
        description="Shows all details for a specific task.",
        build=lambda arguments: ["tasks", "view", escape(_require(arguments, "taskId")), "--plain"],
        properties=_TASK_ID,
        required=("taskId",),
        result_key="details",
        empty_message="Task not found",
    ),
    BacklogToolSpec(
        name="create-task",
        description="Creates a new task in the project backlog.",
        build=_build_create_task,
        properties={
            "title": {"type": "string", "description": "Task title"},
            **_TASK_PROPERTIES,
            "is_draft": {"type": "boolean"},
        },
        required=("title",),
        timeout_class="write",
        empty_message="Task created",
    ),
    BacklogToolSpec(
        name="edit-task",
        description="Updates fields of an existing task.",
        build=_build_edit_task,
        properties={**_TASK_ID, "title": _STRING, **_TASK_PROPERTIES},
        required=("taskId",),
        timeout_class="write",
        empty_message="Task edited",
    ),
    BacklogToolSpec(
        name="complete-task",
        description="Marks a task as completed.",
        build=_task_action("complete"),
        properties=_TASK_ID,
        required=("taskId",),
        empty_message="Task completed",
    ),
    BacklogToolSpec(
        name="archive-task",
        description="Archives a task.",
        build=_task_action("archive"),
        properties=_TASK_ID,
        required=("taskId",),
        empty_message="Task archived",
    ),
    BacklogToolSpec(
        name="demote-task",
        description="Moves a task back to drafts.",
        build=_task_action("demote"),
        properties=_TASK_ID,
        required=("taskId",),
        empty_message="Task demoted",
    ),
    BacklogToolSpec(
        name="search-tasks",
        description="Search for tasks using a text query.",
        build=_search("tasks"),
        properties={"query": {"type": "string", "description": "Search query"}},
        required=("query",),
        result_key="tasks",
        empty_message="No tasks found",
    ),
    BacklogToolSpec(
        name="list-docs",
        description="Lists all Markdown documents in the project's backlog.",
        build=_fixed("doc", "list", "--plain"),
        result_key="docs",
        empty_message="No documents found",
    ),
    BacklogToolSpec(
        name="create-doc",
        description="Creates a new Markdown document.",
        build=_build_create_doc,
        properties={"title": {"type": "string", "description": "Doc title"}, "content": _STRING},
        required=("title",),
        empty_message="Doc created",
    ),
    BacklogToolSpec(
        name="update-doc",
        description="Updates an existing document.",
        build=_build_update_doc,
        properties={
            "docId": {"type": "string", "description": "Doc ID"},
            "title": _STRING,
            "content": _STRING,
        },
        required=("docId",),
        empty_message="Doc updated",
    ),
    BacklogToolSpec(
        name="search-docs",
        description="Search for documents using a text query.",
        build=_search("doc"),
        properties={"query": {"type": "string", "description": "Search query"}},
        required=("query",),
        result_key="docs",
        empty_message="No docs found",
    ),
    BacklogToolSpec(
        name="list-milestones",
        description="Lists all milestones.",
        build=_fixed("milestone", "list"),
        result_key="milestones",
        empty_message="No milestones found",
    ),
    BacklogToolSpec(
        name="add-milestone",
        description="Adds a new milestone.",
        build=_build_milestone("add", "name"),
        properties={"name": {"type": "string", "description": "Milestone name"}},
        required=("name",),
        empty_message="Milestone added",
    ),
    BacklogToolSpec(
        name="rename-milestone",
        description="Renames an existing milestone.",
        build=_build_milestone("rename", "oldName", "newName"),
        properties={
            "oldName": {"type": "string", "description": "Old name"},
            "newName": {"type": "string", "description": "New name"},
        },
        required=("oldName", "newName"),
        empty_message="Milestone renamed",
    ),
    BacklogToolSpec(
        name="remove-milestone",
        description="Removes a milestone.",
        build=_build_milestone("remove", "name"),
        properties={"name": {"type": "string", "description": "Milestone name"}},
        required=("name",),
        empty_message="Milestone removed",
    ),
    BacklogToolSpec(
        name="get-workflow-overview",
        description="Returns the general workflow overview for the project.",
        build=_fixed("workflow", "overview"),
        requires_init=False,
        result_key="content",
    ),
    BacklogToolSpec(
        name="get-task-creation-guide",
        description="Returns the guide for creating tasks.",
        build=_fixed("workflow", "task-creation"),
        requires_init=False,
        result_key="content",
    ),
    BacklogToolSpec(
        name="get-task-execution-guide",
        description="Returns the guide for executing tasks.",
        build=_fixed("workflow", "task-execution"),
        requires_init=False,
        result_key="content",
    ),
    BacklogToolSpec(
        name="get-task-completion-guide",
        description="Returns the guide for completing tasks.",
        build=_fixed("workflow", "task-completion"),
        requires_init=False,
        result_key="content",
    ),
]


class BacklogTools:
    """Binds the backlog tool catalog to a command adapter and session state."""

    def __init__(self, adapter: CommandAdapter, state_store: SessionStateStore) -> None:
        """Initialize backlog tools.

        Args:
            adapter: Command adapter that runs the ``backlog`` CLI
            state_store: Sticky working directory store
        """
        self.adapter = adapter
        self.state_store = state_store

    async def run(
        self, spec: BacklogToolSpec, arguments: dict[str, Any], context: ToolContext
    ) -> dict[str, Any]:
        cwd = self.state_store.get_effective_path(context.session_id, arguments.get("path"))
        tokens = spec.build(arguments)
        outcome = await self.adapter.invoke(
            cwd, tokens, timeout_class=spec.timeout_class, requires_init=spec.requires_init
        )
        if "error" in outcome:
            return outcome
        return {spec.result_key: outcome["stdout"] or spec.empty_message}

    async def init_project(self, arguments: dict[str, Any], context: ToolContext) -> dict[str, Any]:
        """Create the backlog structure in the session's working directory."""
        cwd = self.state_store.get_effective_path(context.session_id, arguments.get("path"))
        name = arguments.get("projectName") or Path(cwd).name
        _backlog_log.info("init_project session_id=%s cwd=%s name=%s", context.session_id, cwd, name)
        outcome = await self.adapter.invoke(
            cwd,
            ["init", escape(name), "--defaults"],
            timeout_class="init",
            requires_init=False,
        )
        if "error" in outcome:
            return {"success": False, **outcome}
        return {"success": True, "message": outcome["stdout"] or "Project initialized"}

    async def view_doc(self, arguments: dict[str, Any], context: ToolContext) -> dict[str, Any]:
        """Read a document straight from ``backlog/docs`` without the CLI."""
        cwd = self.state_store.get_effective_path(context.session_id, arguments.get("path"))
        doc_id = _require(arguments, "docId")
        try:
            self.adapter.check_initialized(cwd)
        except ProjectNotInitializedError as e:
            return {"error": e.message, "error_code": e.code}

        docs_dir = Path(cwd) / self.adapter.marker_dir / "docs"
        if not docs_dir.is_dir():
            return {"error": "Doc not found", "error_code": "NOT_FOUND"}
        for doc_file in sorted(docs_dir.iterdir()):
            if doc_file.name.startswith(f"{doc_id} - ") or doc_file.name == f"{doc_id}.md":
                return {"content": doc_file.read_text(encoding="utf-8")}
        return {"error": "Doc not found", "error_code": "NOT_FOUND"}

    def _bind(self, spec: BacklogToolSpec) -> ToolEntry:
        async def invoke(arguments: dict[str, Any], context: ToolContext) -> dict[str, Any]:
            return await self.run(spec, arguments, context)

        return ToolEntry(
            name=spec.name,
            description=spec.description,
            input_schema=spec.input_schema(),
            invoke=invoke,
            source=BACKLOG_SEGMENT,
        )

    def tool_set(self) -> ToolSet:
        """All backlog tools, ``init-project`` first."""
        tools = ToolSet()
        tools.add(
            ToolEntry(
                name="init-project",
                description="Initializes a new Backlog.md structure.",
                input_schema={
                    "type": "object",
                    "properties": {
                        "path": {"type": "string", "description": PATH_DESCRIPTION},
                        "projectName": {"type": "string", "description": "Optional project name"},
                    },
                    "required": [],
                },
                invoke=self.init_project,
                source=BACKLOG_SEGMENT,
            )
        )
        for spec in BACKLOG_TOOL_SPECS:
            tools.add(self._bind(spec))
            if spec.name == "list-docs":
                tools.add(
                    ToolEntry(
                        name="view-doc",
                        description="Reads and returns the content of a specific Markdown document.",
                        input_schema={
                            "type": "object",
                            "properties": {
                                "docId": {"type": "string", "description": "Document ID"},
                                "path": {"type": "string", "description": PATH_DESCRIPTION},
                            },
                            "required": ["docId"],
                        },
                        invoke=self.view_doc,
                        source=BACKLOG_SEGMENT,
                    )
                )
        return tools


def build_backlog_tools(adapter: CommandAdapter, state_store: SessionStateStore) -> ToolSet:
    return BacklogTools(adapter, state_store).tool_set()
