"""Job orchestrator: intake, clarification dialogue, drain and manual retry.

Job states:

    pending      queued, waiting for a drain tick
    questioning  waiting for the user's answers in the chat thread (never queued)
    processing   claimed by one drain invocation
    completed    change applied upstream; result set
    failed       terminal failure; error set

Collaborator errors are classified here: conflicts and non-retryable errors
end the job, everything else goes through the bounded automatic retry.
Notification failures are logged and never roll back job state.
"""

import logging
import time
from typing import Any, Callable, Dict, List

from larkbot.applier.base import ChangeApplier
from larkbot.errors import BotError, ConflictError, JobNotFoundError, ValidationError, is_retryable, retry_after_of
from larkbot.models import (
    COMPLETED,
    FAILED,
    MAX_QUESTIONS,
    PENDING,
    QUESTIONING,
    TERMINAL_STATUSES,
    ChangeSet,
    Job,
    JobContext,
    JobResult,
    NeedsQuestions,
    ProcessResult,
    Question,
    QuestionDraft,
)
from larkbot.notifier import cards
from larkbot.notifier.base import Notifier
from larkbot.planner.base import Planner
from larkbot.retry_policy import backoff_delay, should_retry
from larkbot.store.base import JobStore, now_ms
from larkbot.validation import is_help_request, is_list_request, parse_branch_spec, sanitize_message

OUTCOME_COMPLETED = "completed"
OUTCOME_FAILED = "failed"
OUTCOME_REQUEUED = "requeued"

LOG = logging.getLogger("larkbot.orchestrator")


def _error_text(exc: BaseException) -> str:
    if isinstance(exc, BotError):
        return exc.message
    return str(exc) or exc.__class__.__name__


class Orchestrator:
    """Drives jobs through their lifecycle using injected collaborators."""

    def __init__(
        self,
        store: JobStore,
        planner: Planner,
        applier: ChangeApplier,
        notifier: Notifier,
        default_repo_url: str,
        default_branch: str = "main",
        bot_name: str = "Lark Bot Agent",
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.store = store
        self.planner = planner
        self.applier = applier
        self.notifier = notifier
        self.default_repo_url = default_repo_url
        self.default_branch = default_branch
        self.bot_name = bot_name
        self._sleep = sleep
        self._clock = clock

    # -- notifications ---------------------------------------------------------

    def _notify(self, recipient: str, card: Dict[str, Any], thread_id: str | None = None) -> None:
        try:
            if thread_id:
                self.notifier.notify_thread(recipient, thread_id, card)
            else:
                self.notifier.notify(recipient, card)
        except Exception as e:
            LOG.warning("Failed to deliver card to %s: %s", recipient, e)

    def _notify_dialogue(self, job: Job, card: Dict[str, Any]) -> None:
        self._notify(job.recipient, card, thread_id=job.thread_id)

    # -- intake ----------------------------------------------------------------

    def intake(
        self,
        user_id: str,
        chat_id: str | None,
        message: str,
        thread_id: str | None = None,
        message_id: str | None = None,
    ) -> Job | None:
        """Handle one incoming chat message.

        A reply in the thread of the user's questioning job answers that job;
        anything else starts a new job (or is a help/list command). Returns
        the created or updated job, None when no job was touched.
        """
        recipient = chat_id or user_id
        try:
            text = sanitize_message(message)
        except ValidationError as e:
            LOG.info("Rejected message from %s: %s", user_id, e.message)
            self._notify(recipient, cards.error_card(None, e.message))
            return None

        if thread_id:
            open_job = self._find_questioning(user_id, thread_id)
            if open_job is not None:
                return self._answer(open_job, text)

        if is_help_request(text):
            self._notify(recipient, cards.welcome_card(self.bot_name))
            return None
        if is_list_request(text):
            self._notify(recipient, cards.job_list_card(self.list_user_jobs(user_id)))
            return None

        try:
            spec = parse_branch_spec(text)
        except ValidationError as e:
            self._notify(recipient, cards.error_card(None, e.message))
            return None

        context = JobContext(
            repo_url=self.default_repo_url,
            branch=spec.branch or self.default_branch,
            mode=spec.mode,
        )
        fields: Dict[str, Any] = {
            "user_id": user_id,
            "chat_id": chat_id,
            "message": spec.message,
            "context": context,
            "thread_id": thread_id or message_id,
            "parent_message_id": message_id,
        }

        try:
            plan = self.planner.analyze(spec.message, context)
        except Exception as e:
            if not is_retryable(e):
                LOG.error("Planner rejected instruction from %s: %s", user_id, e)
                self._notify(recipient, cards.error_card(None, _error_text(e)))
                return None
            # Planned later by the drain
            LOG.warning("Planner unavailable at intake for %s, queueing unplanned job: %s", user_id, e)
            job = self.store.create(**fields, status=PENDING, error=_error_text(e))
            self._notify(job.recipient, cards.processing_card(job))
            return job

        if isinstance(plan, NeedsQuestions):
            questions = self._new_questions(plan.questions, [])
            job = self.store.create(**fields, status=QUESTIONING, questions=questions)
            LOG.info("Job %s needs %s answers before planning", job.id, len(questions))
            self._notify_dialogue(job, cards.questions_card(job, job.unanswered_questions()))
            return job

        context.code_changes = plan.code_changes
        job = self.store.create(**fields, status=PENDING)
        self._notify(job.recipient, cards.processing_card(job))
        return job

    def _find_questioning(self, user_id: str, thread_id: str) -> Job | None:
        job = self.store.find_by_thread(thread_id)
        if job is None or job.status != QUESTIONING or job.user_id != user_id:
            return None
        return job

    def _new_questions(self, drafts: List[QuestionDraft], existing: List[Question]) -> List[Question]:
        """Turn planner drafts into asked questions; ids stay unique within the job."""
        taken = {q.id for q in existing}
        asked_at = self._clock()
        out = []
        for draft in drafts:
            qid = draft.id
            n = 2
            while qid in taken:
                qid = f"{draft.id}-{n}"
                n += 1
            taken.add(qid)
            out.append(Question(id=qid, text=draft.text, asked_at=asked_at))
        return out

    def _answer(self, job: Job, answer: str) -> Job | None:
        """Record a threaded reply on the oldest unanswered question and refine."""
        questions = [q.model_copy() for q in job.questions]
        slot = next((q for q in questions if not q.answered), None)
        if slot is not None:
            slot.answer = answer
        else:
            LOG.info("Job %s has no open question; passing the reply to the planner as is", job.id)
        job = self.store.update(job.id, questions=questions) or job

        try:
            plan = self.planner.refine(answer, job.questions, job.context, job.message)
        except Exception as e:
            if not is_retryable(e):
                LOG.error("Refine failed for job %s: %s", job.id, e)
                failed = self.store.update(
                    job.id, status=FAILED, error=_error_text(e), completed_at=self._clock()
                ) or job
                self._notify_dialogue(failed, cards.error_card(failed, _error_text(e)))
                return failed
            LOG.warning("Refine unavailable for job %s, queueing unplanned: %s", job.id, e)
            queued = self.store.update(job.id, status=PENDING, error=_error_text(e)) or job
            self._notify_dialogue(queued, cards.starting_card(queued))
            return queued

        if isinstance(plan, NeedsQuestions):
            room = MAX_QUESTIONS - len(job.unanswered_questions())
            added = self._new_questions(plan.questions[: max(room, 0)], job.questions)
            updated = self.store.update(job.id, questions=job.questions + added) or job
            LOG.info("Job %s asked %s more questions", job.id, len(added))
            self._notify_dialogue(updated, cards.questions_card(updated, updated.unanswered_questions()))
            return updated

        context = job.context.model_copy(update={"code_changes": plan.code_changes})
        updated = self.store.update(job.id, status=PENDING, context=context, error=None) or job
        LOG.info("Job %s planned after %s answers", job.id, len(updated.answered_questions()))
        self._notify_dialogue(updated, cards.starting_card(updated))
        return updated

    # -- drain -----------------------------------------------------------------

    def process_next(self) -> ProcessResult:
        """Dequeue and process exactly one pending job."""
        job = self.store.dequeue_oldest_pending()
        if job is None:
            return ProcessResult()
        return self._process(job)

    def process_specific(self, job_id: str) -> ProcessResult | None:
        """Process one job by id outside queue order. None if it is unknown or
        not claimable (questioning, processing, or taken by another worker)."""
        job = self.store.claim(job_id)
        if job is None:
            LOG.info("Job %s not available for processing", job_id)
            return None
        return self._process(job)

    def _resolve_change_set(self, job: Job) -> tuple[Job, ChangeSet]:
        if job.context.code_changes is not None:
            return job, job.context.code_changes
        context = job.context
        if context.existing_files is None:
            files = self.applier.fetch_repository_files(context.repo_url, context.branch)
            context = context.model_copy(update={"existing_files": files})
            job = self.store.update(job.id, context=context) or job
        change_set = self.planner.generate(job.message, context, job.answered_questions())
        context = context.model_copy(update={"code_changes": change_set})
        job = self.store.update(job.id, context=context) or job
        return job, change_set

    def _process(self, job: Job) -> ProcessResult:
        LOG.info("Processing job %s (attempt %s)", job.id, job.retry_count + 1)
        try:
            job, change_set = self._resolve_change_set(job)
            outcome = self.applier.apply(job.context.repo_url, change_set, job.context.branch, job.context.mode)
        except ConflictError as e:
            LOG.warning("Job %s hit merge conflicts: %s", job.id, e.conflicting_files)
            failed = self.store.update(job.id, status=FAILED, error=e.message, completed_at=self._clock()) or job
            self._notify(failed.recipient, cards.conflict_card(failed, e.conflicting_files))
            return ProcessResult(job.id, OUTCOME_FAILED)
        except Exception as e:
            if is_retryable(e):
                return self._retry_or_fail(job, e)
            LOG.error("Job %s failed permanently: %s", job.id, e)
            failed = self.store.update(job.id, status=FAILED, error=_error_text(e), completed_at=self._clock()) or job
            self._notify(failed.recipient, cards.error_card(failed, _error_text(e)))
            return ProcessResult(job.id, OUTCOME_FAILED)

        result = JobResult(**outcome.model_dump())
        done = self.store.update(
            job.id, status=COMPLETED, result=result, error=None, completed_at=self._clock()
        ) or job
        LOG.info("Job %s completed: %s", job.id, result.pr_url or result.branch)
        self._notify(done.recipient, cards.completed_card(done))
        return ProcessResult(job.id, OUTCOME_COMPLETED)

    def _retry_or_fail(self, job: Job, exc: BaseException) -> ProcessResult:
        count = job.retry_count + 1
        error = _error_text(exc)
        if not should_retry(count):
            LOG.error("Job %s failed after %s attempts: %s", job.id, count, error)
            failed = self.store.update(
                job.id, status=FAILED, retry_count=count, error=error, completed_at=self._clock()
            ) or job
            self._notify(failed.recipient, cards.error_card(failed, error))
            return ProcessResult(job.id, OUTCOME_FAILED)
        self.store.update(job.id, retry_count=count, error=error)
        delay = backoff_delay(count, retry_after_of(exc))
        LOG.warning("Job %s attempt %s failed: %s (requeue in %.0fs)", job.id, count, error, delay)
        self._sleep(delay)
        self.store.update(job.id, status=PENDING)
        return ProcessResult(job.id, OUTCOME_REQUEUED)

    # -- queries and manual actions --------------------------------------------

    def get_job(self, job_id: str) -> Job | None:
        return self.store.get(job_id)

    def require_job(self, job_id: str) -> Job:
        job = self.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def list_user_jobs(self, user_id: str, limit: int = 10) -> List[Job]:
        return self.store.list_for_user(user_id, limit)

    def retry(self, job_id: str) -> Job | None:
        """User-triggered retry of a finished job. Ignores the retry cap and
        leaves retry_count as is. No-op (None) for other states."""
        job = self.store.get(job_id)
        if job is None:
            LOG.info("Retry requested for unknown job %s", job_id)
            return None
        if job.status not in TERMINAL_STATUSES:
            LOG.info("Retry ignored for job %s in state %s", job_id, job.status)
            return None
        updated = self.store.update(job_id, status=PENDING, error=None, result=None, completed_at=None)
        if updated is None:
            return None
        LOG.info("Job %s re-queued by user", job_id)
        self._notify(updated.recipient, cards.status_card(updated))
        return updated

    def status_card(self, job_id: str) -> Dict[str, Any] | None:
        job = self.store.get(job_id)
        return cards.status_card(job) if job is not None else None

    def send_status(self, job_id: str, recipient: str | None = None) -> bool:
        """Send the job's status card; False if the job does not exist."""
        job = self.store.get(job_id)
        if job is None:
            return False
        self._notify(recipient or job.recipient, cards.status_card(job))
        return True

    def health(self) -> Dict[str, Any]:
        """Queue depth plus the source host's API quota when the applier tracks one."""
        info: Dict[str, Any] = {"pending": self.store.pending_count()}
        quota = self.applier.quota_status()
        if quota is not None:
            info["github"] = quota
        return info


def make_orchestrator(config: Any) -> Orchestrator:
    """Wire the orchestrator with collaborators selected by config."""
    from larkbot.applier import make_applier
    from larkbot.notifier import make_notifier
    from larkbot.planner import make_planner
    from larkbot.store import make_store

    return Orchestrator(
        store=make_store(config.store),
        planner=make_planner(config),
        applier=make_applier(config),
        notifier=make_notifier(config),
        default_repo_url=config.bot.default_repo_url,
        default_branch=config.bot.default_branch,
        bot_name=config.bot.name,
    )
