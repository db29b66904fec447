"""
Issue classification used to group executions into patterns.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .models import Workflow


class IssueType(StrEnum):
    BUGFIX = "bugfix"
    FEATURE = "feature"
    REFACTOR = "refactor"
    TESTING = "testing"
    DOCUMENTATION = "documentation"
    FRONTEND = "frontend"
    BACKEND = "backend"
    GENERAL = "general"


@dataclass(frozen=True)
class Classification:
    issue_type: IssueType
    reason: str


class IssueClassifier:
    """Classifies an issue from its title first, then its tags."""

    TITLE_RULES: list[tuple[IssueType, str]] = [
        (IssueType.BUGFIX, r"\b(bug|fix)"),
        (IssueType.FEATURE, r"\b(feat|add)"),
        (IssueType.REFACTOR, r"\brefactor"),
        (IssueType.TESTING, r"\btest"),
        (IssueType.DOCUMENTATION, r"\bdocs?\b|\bdocumentation"),
    ]

    TAG_RULES: list[tuple[IssueType, set[str]]] = [
        (IssueType.FRONTEND, {"frontend"}),
        (IssueType.BACKEND, {"backend", "api"}),
    ]

    def classify(self, title: str, tags: Iterable[str] = ()) -> Classification:
        lowered = title.lower()
        for issue_type, pattern in self.TITLE_RULES:
            match = re.search(pattern, lowered)
            if match:
                return Classification(issue_type, f"title:{match.group(0)}")

        tag_set = {tag.lower() for tag in tags}
        for issue_type, keywords in self.TAG_RULES:
            hit = sorted(tag_set & keywords)
            if hit:
                return Classification(issue_type, f"tag:{hit[0]}")

        return Classification(IssueType.GENERAL, "default")


_classifier = IssueClassifier()


def classify_issue(workflow: Workflow) -> IssueType:
    return _classifier.classify(workflow.title, workflow.tags).issue_type
