"""
Stub planner: no AI calls, returns a one-file change-set describing the
instruction.

Use for development or until an API key is configured.
"""

import logging
import re
from typing import List

from larkbot.models import (
    ChangeSet,
    FileChange,
    JobContext,
    NeedsQuestions,
    PlanResult,
    Question,
    QuestionDraft,
    ReadyChangeSet,
)
from larkbot.planner.base import Planner


def _slug(text: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")
    return slug[:40] or "change"


class StubPlanner(Planner):
    """Planner that writes the instruction to a markdown note (or asks once if
    the instruction is too short)."""

    def __init__(self, min_message_length: int = 0) -> None:
        """
        Args:
            min_message_length: If > 0 and the instruction is shorter, ask one
                                clarification question (for testing the dialogue).
        """
        self.min_message_length = min_message_length

    def _change_set(self, message: str, questions: List[Question] | None) -> ChangeSet:
        lines = [f"# {message}", ""]
        for q in questions or []:
            if q.answered:
                lines.append(f"- {q.text} {q.answer}")
        return ChangeSet(
            plan=f"Record instruction: {message[:80]}",
            files=[FileChange(path=f"notes/{_slug(message)}.md", content="\n".join(lines) + "\n")],
            commit_message="docs: record instruction",
        )

    def analyze(self, message: str, context: JobContext) -> PlanResult:
        if self.min_message_length > 0 and len(message.strip()) < self.min_message_length:
            return NeedsQuestions(
                questions=[QuestionDraft(id="q1", text="Please add more details: what exactly should change?")]
            )
        logging.getLogger("larkbot.planner.stub").info("Plan (stub): %s", message[:80])
        return ReadyChangeSet(code_changes=self._change_set(message, None))

    def refine(self, answer: str, questions: List[Question], context: JobContext, message: str) -> PlanResult:
        return ReadyChangeSet(code_changes=self._change_set(message, questions))

    def generate(self, message: str, context: JobContext, questions: List[Question] | None = None) -> ChangeSet:
        return self._change_set(message, questions)
