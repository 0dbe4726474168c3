"""Abstract base for planners (instruction analysis, dialogue refinement,
change-set generation)."""

from typing import List

from larkbot.models import ChangeSet, JobContext, PlanResult, Question


class Planner:
    """
    Pluggable AI planner: decide whether an instruction is clear enough and
    turn it into a change-set.

    Implementations raise ConfigurationError, TransportError, ParseError or
    RateLimitError from larkbot.errors.
    """

    def analyze(self, message: str, context: JobContext) -> PlanResult:
        """Either ask up to three clarification questions or return a change-set."""
        raise NotImplementedError

    def refine(
        self,
        answer: str,
        questions: List[Question],
        context: JobContext,
        message: str,
    ) -> PlanResult:
        """Continue a clarification dialogue after the user answered.

        questions is the job's full question list with answers recorded so far.
        May ask further questions or return the final change-set.
        """
        raise NotImplementedError

    def generate(
        self,
        message: str,
        context: JobContext,
        questions: List[Question] | None = None,
    ) -> ChangeSet:
        """Produce a change-set directly, without asking anything."""
        raise NotImplementedError
