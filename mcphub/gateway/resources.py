"""Static workflow guide resources served by the backlog segment."""

from typing import Any

_WORKFLOW_GUIDES: dict[str, tuple[str, str]] = {
    "backlog://workflow/overview": (
        "Backlog Workflow Overview",
        "# Backlog Workflow Overview\n\n"
        "Tasks live as Markdown files under `backlog/tasks`. Initialise a project with "
        "`init-project`, list work with `list-tasks`, and move tasks through their "
        "statuses with `edit-task` until `complete-task` closes them.\n",
    ),
    "backlog://workflow/task-creation": (
        "Task Creation Guide",
        "# Task Creation Guide\n\n"
        "Give every task a short imperative title, a description of the outcome, and "
        "acceptance criteria that can be checked off. Use labels for grouping and "
        "`parent_id` to split large work into subtasks.\n",
    ),
    "backlog://workflow/task-execution": (
        "Task Execution Guide",
        "# Task Execution Guide\n\n"
        "Set the task to In Progress and assign yourself before starting. Record the "
        "implementation plan with `edit-task --plan` and keep notes current while working.\n",
    ),
    "backlog://workflow/task-completion": (
        "Task Completion Guide",
        "# Task Completion Guide\n\n"
        "Confirm every acceptance criterion, add final notes, then run `complete-task`. "
        "Archive tasks that were abandoned instead of completing them.\n",
    ),
}


def list_workflow_resources() -> list[dict[str, Any]]:
    """Resource descriptors in ``resources/list`` shape."""
    return [
        {"uri": uri, "name": name, "mimeType": "text/markdown"}
        for uri, (name, _) in _WORKFLOW_GUIDES.items()
    ]


def read_workflow_resource(uri: str) -> dict[str, Any]:
    """Return a ``resources/read`` payload; unknown URIs raise ``ValueError``."""
    guide = _WORKFLOW_GUIDES.get(uri)
    if guide is None:
        raise ValueError(f"Resource not found: {uri}")
    return {"contents": [{"uri": uri, "mimeType": "text/markdown", "text": guide[1]}]}
