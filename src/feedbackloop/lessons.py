from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path

LOGGER = logging.getLogger(__name__)

LEARNED_CATEGORIES = (
    "Navigation",
    "Editing",
    "Testing",
    "Git",
    "Quality",
    "Context",
    "Integration",
    "Architecture",
)

LEARNED_RULES_PER_CATEGORY = 5

EXPLICIT_LESSON_PATTERN = re.compile(r"\[LEARN\]\s*(\w+):\s*(.+?)(?:\n|$)", re.IGNORECASE)

FEEDBACK_RULES: tuple[tuple[re.Pattern[str], str, str], ...] = (
    (
        re.compile(r"not integrated|demo page|not used", re.IGNORECASE),
        "Integration",
        "Integrate into existing pages, not demo files",
    ),
    (
        re.compile(r"wrong (file|path|directory)", re.IGNORECASE),
        "Navigation",
        "Verify full path before editing",
    ),
    (
        re.compile(r"type error|typescript|type mismatch", re.IGNORECASE),
        "Quality",
        "Run type check before completing",
    ),
    (
        re.compile(r"test fail|tests? (fail|broken)", re.IGNORECASE),
        "Testing",
        "Run tests before marking complete",
    ),
    (
        re.compile(r"missing import|import error", re.IGNORECASE),
        "Editing",
        "Verify imports after adding dependencies",
    ),
    (
        re.compile(r"console\.log|debugger|TODO", re.IGNORECASE),
        "Quality",
        "Remove debug statements before commit",
    ),
    (
        re.compile(r"didn't ask|should have asked|clarify", re.IGNORECASE),
        "Context",
        "Ask for clarification when requirements unclear",
    ),
)


@dataclass(slots=True, frozen=True)
class Lesson:
    category: str
    rule: str


def group_lessons(lessons: list[Lesson]) -> dict[str, list[str]]:
    """Rules per category, known categories first, duplicates dropped."""
    grouped: dict[str, list[str]] = {}
    for lesson in lessons:
        rules = grouped.setdefault(lesson.category, [])
        if lesson.rule not in rules:
            rules.append(lesson.rule)
    ordered = [name for name in LEARNED_CATEGORIES if name in grouped]
    ordered.extend(name for name in grouped if name not in LEARNED_CATEGORIES)
    return {name: grouped[name] for name in ordered}


def render_learned(lessons: list[Lesson], per_category: int = LEARNED_RULES_PER_CATEGORY) -> str:
    lines: list[str] = []
    for category, rules in group_lessons(lessons).items():
        lines.append(f"{category}:")
        lines.extend(f"- {rule}" for rule in rules[:per_category])
    return "\n".join(lines)


def extract_lessons(feedback: str) -> list[Lesson]:
    lessons = [
        Lesson(category=match.group(1), rule=match.group(2).strip())
        for match in EXPLICIT_LESSON_PATTERN.finditer(feedback)
    ]
    for pattern, category, rule in FEEDBACK_RULES:
        if pattern.search(feedback):
            lessons.append(Lesson(category=category, rule=rule))
    return lessons


class LearnedRulesStore:
    """Category-grouped rules persisted as a markdown file."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def load(self) -> list[Lesson]:
        if not self.path.exists():
            return []
        lessons: list[Lesson] = []
        category: str | None = None
        for line in self.path.read_text(encoding="utf-8").splitlines():
            if line.startswith("## "):
                category = line[3:].strip()
            elif line.startswith("- ") and category:
                rule = line[2:].strip()
                if rule:
                    lessons.append(Lesson(category=category, rule=rule))
        return lessons

    def save(self, lessons: list[Lesson]) -> None:
        lines = ["# LEARNED", "", "Auto-captured lessons from feedback loop sessions.", ""]
        for name, rules in group_lessons(lessons).items():
            lines.append(f"## {name}")
            lines.extend(f"- {rule}" for rule in rules)
            lines.append("")
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text("\n".join(lines), encoding="utf-8")

    def append(self, new_lessons: list[Lesson]) -> int:
        """Add rules not already known (case-insensitive); returns how many were added."""
        if not new_lessons:
            return 0
        existing = self.load()
        seen = {lesson.rule.lower() for lesson in existing}
        added = 0
        for lesson in new_lessons:
            key = lesson.rule.lower()
            if key in seen:
                continue
            seen.add(key)
            existing.append(lesson)
            added += 1
        if added:
            self.save(existing)
            LOGGER.info("Recorded %d new lesson(s) in %s", added, self.path)
        return added

    def learn_from_feedback(self, feedback: str) -> int:
        return self.append(extract_lessons(feedback))
