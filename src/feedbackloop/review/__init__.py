from feedbackloop.review.gates import ApprovalGateEvaluator, evaluate_gates
from feedbackloop.review.parser import (
    MalformedJson,
    NoJsonFound,
    Parsed,
    ReviewerResponseParser,
    SchemaMismatch,
    extract_payload,
    parse_reviewer_response,
)

__all__ = [
    "ApprovalGateEvaluator",
    "MalformedJson",
    "NoJsonFound",
    "Parsed",
    "ReviewerResponseParser",
    "SchemaMismatch",
    "evaluate_gates",
    "extract_payload",
    "parse_reviewer_response",
]
