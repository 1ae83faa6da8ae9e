from feedbackloop.specialists.base import SpecialistAgent, SpecialistResponse
from feedbackloop.specialists.coder import CoderAgent
from feedbackloop.specialists.committer import CommitterAgent, parse_commit_reply
from feedbackloop.specialists.criteria import AcceptanceCriteriaAgent, default_criteria, parse_criteria_reply
from feedbackloop.specialists.explorer import ExploreResult, ExplorerAgent
from feedbackloop.specialists.planner import PlannerAgent, PlanResult
from feedbackloop.specialists.reviewer import ReviewerAgent

__all__ = [
    "AcceptanceCriteriaAgent",
    "CoderAgent",
    "CommitterAgent",
    "ExploreResult",
    "ExplorerAgent",
    "PlanResult",
    "PlannerAgent",
    "ReviewerAgent",
    "SpecialistAgent",
    "SpecialistResponse",
    "default_criteria",
    "parse_commit_reply",
    "parse_criteria_reply",
]
