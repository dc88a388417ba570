"""Prompt rendering for the agent and summaries for terminal records."""

from __future__ import annotations

from agent_tasks.orchestrator.classifier import COMPLETION_MARKER, FAILURE_MARKER
from agent_tasks.orchestrator.models import Task

OUTPUT_TAIL_CHARS = 1500
SUMMARY_TAIL_LINES = 5


def build_task_prompt(task: Task) -> str:
    """Wrap the requirement with completion criteria and the marker contract."""

    criteria = task.completion_criteria or "None"
    return (
        f"# Task request\n"
        f"\n"
        f"## Requirement\n"
        f"{task.requirement}\n"
        f"\n"
        f"## Completion criteria\n"
        f"{criteria}\n"
        f"\n"
        f"## Instructions\n"
        f"- Carry out the requirement above and satisfy the completion criteria.\n"
        f"- When you are done, verify that the completion criteria are met.\n"
        f"- If they are not met, explain why.\n"
        f"\n"
        f"## Completion signal (important)\n"
        f"- If all work is done and the completion criteria are met, print exactly:\n"
        f"  {COMPLETION_MARKER}\n"
        f"- If the work cannot be completed or the criteria are not met, print:\n"
        f"  {FAILURE_MARKER}\n"
        f"  Reason: <specific reason>\n"
    )


def summarize_success(output: str) -> str:
    """Tail of the transcript, where the agent states its conclusion."""

    text = output.strip()
    if len(text) <= OUTPUT_TAIL_CHARS:
        return text
    return f"...{text[-OUTPUT_TAIL_CHARS:]}"


def summarize_failure(reason: str | None, output: str) -> str:
    """Failure reason followed by the last non-empty output lines."""

    lines = [line for line in output.splitlines() if line.strip()]
    tail = "\n".join(lines[-SUMMARY_TAIL_LINES:])[-OUTPUT_TAIL_CHARS:]
    head = f"Reason: {reason}" if reason else "Task failed."
    if not tail:
        return head
    return f"{head}\n{tail}"
