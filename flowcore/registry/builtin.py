"""Workflow types shipped with flowcore."""

from __future__ import annotations

from typing import List

from .models import StepSpec, TransitionTable

CONTENT_PUBLISH = TransitionTable(
    workflow_type="content-publish",
    description="Generate a piece of content, route it for approval, then publish it.",
    initial_state="pending_generation",
    default_priority=5,
    transitions={
        "pending_generation": {"succeeded": "pending_approval", "failed": "failed"},
        "pending_approval": {
            "approved": "publishing",
            "changes_requested": "pending_generation",
            "rejected": "failed",
        },
        "publishing": {"succeeded": "completed", "failed": "failed"},
    },
    steps={
        "pending_generation": [StepSpec(kind="generate_content")],
        "publishing": [StepSpec(kind="publish_content")],
    },
)

MULTI_PLATFORM_PUBLISH = TransitionTable(
    workflow_type="multi-platform-publish",
    description="Optimize content once, then publish it to every requested platform.",
    initial_state="optimizing",
    default_priority=3,
    transitions={
        "optimizing": {"succeeded": "publishing", "failed": "failed"},
        "publishing": {"succeeded": "collecting_metrics", "failed": "failed"},
        "collecting_metrics": {"succeeded": "completed", "failed": "completed"},
    },
    steps={
        "optimizing": [StepSpec(kind="optimize_content")],
        "publishing": [
            StepSpec(kind="publish_post", for_each="platforms", item_key="platform")
        ],
        "collecting_metrics": [StepSpec(kind="collect_metrics", priority_override=0)],
    },
)

APPROVAL_ROUTING = TransitionTable(
    workflow_type="approval-routing",
    description="Notify reviewers and wait for a decision, escalating when asked to.",
    initial_state="pending_review",
    default_priority=4,
    transitions={
        "pending_review": {"succeeded": "awaiting_decision", "failed": "failed"},
        "awaiting_decision": {
            "approved": "completed",
            "rejected": "failed",
            "escalate": "escalated",
        },
        "escalated": {"succeeded": "awaiting_final_decision", "failed": "failed"},
        "awaiting_final_decision": {"approved": "completed", "rejected": "failed"},
    },
    steps={
        "pending_review": [StepSpec(kind="notify_reviewers")],
        "escalated": [StepSpec(kind="notify_reviewers", payload={"escalation": True})],
    },
)

BUILTIN_WORKFLOWS: List[TransitionTable] = [
    CONTENT_PUBLISH,
    MULTI_PLATFORM_PUBLISH,
    APPROVAL_ROUTING,
]
