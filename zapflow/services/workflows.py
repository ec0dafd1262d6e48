"""Workflows: ordered checklists an agent runs on a chat."""

import logging
from datetime import datetime
from typing import Optional, Sequence

from zapflow.models.chat import ActiveWorkflow, Chat, ChatStatus
from zapflow.models.directory import Department, Workflow
from zapflow.services.chat_status import transfer_chat

logger = logging.getLogger(__name__)


def start_workflow(chat: Chat, workflow: Workflow) -> Chat:
    """Attach ``workflow`` to the chat with no steps completed, replacing any running one."""
    if chat.status == ChatStatus.CLOSED:
        logger.info("Ignoring workflow start on closed chat", extra={"chat_id": chat.id})
        return chat
    return chat.model_copy(update={"active_workflow": ActiveWorkflow(workflow_id=workflow.id)})


def cancel_workflow(chat: Chat) -> Chat:
    return chat.model_copy(update={"active_workflow": None})


def toggle_workflow_step(
    chat: Chat,
    workflow: Workflow,
    step_id: str,
    now: datetime,
    departments: Optional[Sequence[Department]] = None,
) -> Chat:
    """
    Flip a step between done and not done.

    Completing a step that names a target department transfers the chat
    there. Un-completing it does not transfer back.

    Args:
        chat: Chat running ``workflow``
        workflow: The workflow definition
        step_id: Step to toggle
        now: Timestamp for the transfer note
        departments: Used to label the transfer note

    Returns:
        Updated chat, unchanged when the workflow is not running or the step is unknown
    """
    active = chat.active_workflow
    if active is None or active.workflow_id != workflow.id:
        logger.info("Workflow is not running on chat", extra={"chat_id": chat.id, "workflow_id": workflow.id})
        return chat

    step = next((s for s in workflow.steps if s.id == step_id), None)
    if step is None:
        logger.info("Unknown workflow step", extra={"chat_id": chat.id, "step_id": step_id})
        return chat

    if step_id in active.completed_step_ids:
        completed = [s for s in active.completed_step_ids if s != step_id]
        return chat.model_copy(update={"active_workflow": ActiveWorkflow(workflow_id=workflow.id, completed_step_ids=completed)})

    updated = chat
    if step.target_department_id:
        names = {d.id: d.name for d in departments or []}
        updated = transfer_chat(chat, step.target_department_id, now, names.get(step.target_department_id))

    completed = active.completed_step_ids + [step_id]
    return updated.model_copy(update={"active_workflow": ActiveWorkflow(workflow_id=workflow.id, completed_step_ids=completed)})


def is_complete(chat: Chat, workflow: Workflow) -> bool:
    active = chat.active_workflow
    if active is None or active.workflow_id != workflow.id:
        return False
    return all(step.id in active.completed_step_ids for step in workflow.steps)
