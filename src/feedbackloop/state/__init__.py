from feedbackloop.state.inbox import InboundQueue
from feedbackloop.state.json_store import JsonStateStore, PlanStateError
from feedbackloop.state.plan_state import PlanStateStore, new_session_id
from feedbackloop.state.records import ErrorEntry, Findings, Progress, TaskPlan

__all__ = [
    "ErrorEntry",
    "Findings",
    "InboundQueue",
    "JsonStateStore",
    "PlanStateError",
    "PlanStateStore",
    "Progress",
    "TaskPlan",
    "new_session_id",
]
