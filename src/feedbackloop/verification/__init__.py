from feedbackloop.verification.browser import (
    BrowserReport,
    BrowserService,
    PageCheck,
    http_check,
    run_browser_checks,
)
from feedbackloop.verification.commands import CommandRunner, extract_error_summary
from feedbackloop.verification.evidence import StructuredEvidence, parse_structured_evidence

__all__ = [
    "BrowserReport",
    "BrowserService",
    "CommandRunner",
    "PageCheck",
    "StructuredEvidence",
    "extract_error_summary",
    "http_check",
    "parse_structured_evidence",
    "run_browser_checks",
]
