"""Tests for the job orchestrator (intake, dialogue, drain, retry)."""

from unittest.mock import Mock

import pytest
from conftest import make_change_set

from larkbot.errors import (
    BranchNotFoundError,
    ConfigurationError,
    ConflictError,
    JobNotFoundError,
    ParseError,
    RateLimitError,
    TransportError,
)
from larkbot.models import (
    COMPLETED,
    FAILED,
    MODE_UPDATE_BRANCH,
    PENDING,
    PROCESSING,
    QUESTIONING,
    ApplyOutcome,
    NeedsQuestions,
    QuestionDraft,
    ReadyChangeSet,
)
from larkbot.orchestrator import Orchestrator
from larkbot.planner.retrying import RetryingPlanner

REPO = "https://github.com/owner/repo"


@pytest.fixture
def sleep() -> Mock:
    return Mock()


@pytest.fixture
def orch(store, planner, applier, notifier, clock, sleep) -> Orchestrator:
    return Orchestrator(
        store=store,
        planner=planner,
        applier=applier,
        notifier=notifier,
        default_repo_url=REPO,
        default_branch="main",
        sleep=sleep,
        clock=clock,
    )


def _questions(*texts: str) -> NeedsQuestions:
    return NeedsQuestions(questions=[QuestionDraft(id=f"q{i}", text=t) for i, t in enumerate(texts, 1)])


class TestIntake:
    def test_clear_instruction_creates_pending_job(self, orch, planner, store, notifier) -> None:
        """A change-set from analyze yields a pending job with code_changes and a processing card."""
        job = orch.intake("ou_1", "oc_1", "add a date formatter to utils.ts", message_id="om_1")
        assert job.status == PENDING
        assert job.context.code_changes is not None
        assert job.context.repo_url == REPO
        assert job.context.branch == "main"
        assert store.pending_count() == 1
        assert notifier.titles() == ["🤖 Task received"]
        assert notifier.sent[0]["recipient"] == "oc_1"

    def test_ambiguous_instruction_asks_questions_in_thread(self, orch, planner, store, notifier) -> None:
        """Questions from analyze yield a questioning job and a questions card on the thread."""
        planner.queue("analyze", _questions("Which provider?", "Session or token?"))
        job = orch.intake("ou_1", "oc_1", "add auth", message_id="om_1")
        assert job.status == QUESTIONING
        assert [q.text for q in job.questions] == ["Which provider?", "Session or token?"]
        assert all(q.asked_at > 0 for q in job.questions)
        assert store.pending_count() == 0
        assert notifier.sent[-1]["thread_id"] == "om_1"
        assert "Which provider?" in str(notifier.sent[-1]["card"])

    def test_help_sends_welcome_without_job(self, orch, planner, store, notifier) -> None:
        """help shows usage and creates nothing."""
        assert orch.intake("ou_1", "oc_1", "help") is None
        assert planner.calls == []
        assert store.list_for_user("ou_1") == []
        assert notifier.titles()[0].startswith("👋")

    def test_jobs_command_lists_jobs(self, orch, notifier) -> None:
        """jobs sends the user's job list."""
        orch.intake("ou_1", "oc_1", "add a button")
        orch.intake("ou_1", "oc_1", "jobs")
        assert notifier.titles()[-1] == "📋 Your tasks"
        assert "add a button" in str(notifier.sent[-1]["card"])

    def test_invalid_message_rejected_without_job(self, orch, planner, store, notifier) -> None:
        """Empty input is a validation error: error card, no job, no planner call."""
        assert orch.intake("ou_1", "oc_1", " \x00 ") is None
        assert planner.calls == []
        assert store.list_for_user("ou_1") == []
        assert notifier.titles() == ["❌ Something went wrong"]

    def test_branch_prefix_selects_update_branch(self, orch, planner) -> None:
        """'branch: x ...' targets branch x in update-branch mode with the prefix stripped."""
        job = orch.intake("ou_1", "oc_1", "branch: feature-auth fix the login check")
        assert job.context.mode == MODE_UPDATE_BRANCH
        assert job.context.branch == "feature-auth"
        assert job.message == "fix the login check"
        assert planner.calls[0] == ("analyze", "fix the login check")

    def test_config_error_sends_error_card_without_job(self, orch, planner, store, notifier) -> None:
        """A missing planner key is fatal at intake: no job is created."""
        planner.queue("analyze", ConfigurationError("Planner API key is not set"))
        assert orch.intake("ou_1", "oc_1", "add x") is None
        assert store.list_for_user("ou_1") == []
        assert "Planner API key is not set" in str(notifier.sent[-1]["card"])

    def test_transient_planner_failure_queues_unplanned_job(self, orch, planner, applier, store) -> None:
        """A retryable analyze failure still queues the job; the drain plans it with generate."""
        planner.queue("analyze", TransportError("timeout"))
        job = orch.intake("ou_1", "oc_1", "add x")
        assert job.status == PENDING
        assert job.context.code_changes is None
        result = orch.process_next()
        assert result.outcome == "completed"
        assert [c[0] for c in planner.calls] == ["analyze", "generate"]
        assert applier.fetch_calls == [(REPO, "main")]
        done = store.get(job.id)
        assert done.context.existing_files == {"README.md": "# repo\n"}
        assert done.context.code_changes is not None

    def test_retrying_planner_hides_transient_failures(self, store, applier, notifier, clock) -> None:
        """Two transport errors then success inside the planner wrapper: the user sees only the processing card."""
        inner = Mock()
        inner.analyze.side_effect = [
            TransportError("reset"),
            TransportError("reset"),
            ReadyChangeSet(code_changes=make_change_set()),
        ]
        orch = Orchestrator(
            store=store,
            planner=RetryingPlanner(inner, sleep=Mock()),
            applier=applier,
            notifier=notifier,
            default_repo_url=REPO,
            clock=clock,
        )
        job = orch.intake("ou_1", "oc_1", "add a date formatter to utils.ts")
        assert job.status == PENDING
        assert job.error is None
        assert inner.analyze.call_count == 3
        assert notifier.titles() == ["🤖 Task received"]

    def test_second_message_creates_independent_job(self, orch, store) -> None:
        """A new message while another job is queued creates a separate job."""
        a = orch.intake("ou_1", "oc_1", "add x")
        b = orch.intake("ou_1", "oc_1", "add y")
        assert a.id != b.id
        assert store.pending_count() == 2

    def test_notifier_failure_does_not_roll_back(self, orch, notifier, store) -> None:
        """A failed card delivery is logged; the job is still created."""
        notifier.fail = True
        job = orch.intake("ou_1", "oc_1", "add x")
        assert store.get(job.id).status == PENDING


class TestDialogue:
    def test_answer_resolves_to_pending_without_new_job(self, orch, planner, store, notifier) -> None:
        """Threaded reply answers the oldest question; a change-set moves the same job to pending."""
        planner.queue("analyze", _questions("Which provider?", "Session or token?"))
        job = orch.intake("ou_1", "oc_1", "add auth", message_id="om_1")
        updated = orch.intake("ou_1", "oc_1", "GitHub OAuth, sessions", thread_id="om_1", message_id="om_2")
        assert updated.id == job.id
        assert updated.status == PENDING
        assert updated.context.code_changes is not None
        assert updated.questions[0].answer == "GitHub OAuth, sessions"
        assert updated.questions[1].answer is None
        assert len(store.list_for_user("ou_1")) == 1
        assert notifier.titles()[-1] == "🚀 Thanks, starting work"
        assert notifier.sent[-1]["thread_id"] == "om_1"
        op, answer, questions = planner.calls[-1]
        assert op == "refine"
        assert questions[0].answer == "GitHub OAuth, sessions"
        assert orch.process_next().outcome == "completed"
        assert store.get(job.id).status == COMPLETED

    def test_more_questions_appended(self, orch, planner, notifier) -> None:
        """refine may ask again; new questions are appended and the job stays questioning."""
        planner.queue("analyze", _questions("Which provider?"))
        planner.queue("refine", _questions("Which scopes?"))
        job = orch.intake("ou_1", "oc_1", "add auth", message_id="om_1")
        updated = orch.intake("ou_1", "oc_1", "GitHub", thread_id="om_1")
        assert updated.id == job.id
        assert updated.status == QUESTIONING
        assert [q.id for q in updated.questions] == ["q1", "q1-2"]
        assert [q.text for q in updated.unanswered_questions()] == ["Which scopes?"]
        assert "Which scopes?" in str(notifier.sent[-1]["card"])

    def test_one_reply_fills_one_slot(self, orch, planner) -> None:
        """Each reply answers exactly one question, oldest first."""
        planner.queue("analyze", _questions("A?", "B?"))
        planner.queue("refine", _questions("C?"), ReadyChangeSet(code_changes=make_change_set()))
        orch.intake("ou_1", "oc_1", "add auth", message_id="om_1")
        first = orch.intake("ou_1", "oc_1", "a1", thread_id="om_1")
        assert [q.answer for q in first.questions] == ["a1", None, None]
        second = orch.intake("ou_1", "oc_1", "b1", thread_id="om_1")
        assert [q.answer for q in second.questions] == ["a1", "b1", None]
        assert second.status == PENDING

    def test_unanswered_capped_at_three(self, orch, planner) -> None:
        """Appending never leaves more than three unanswered questions."""
        planner.queue("analyze", _questions("A?", "B?", "C?"))
        planner.queue("refine", _questions("D?", "E?", "F?"))
        orch.intake("ou_1", "oc_1", "add auth", message_id="om_1")
        job = orch.intake("ou_1", "oc_1", "a", thread_id="om_1")
        assert len(job.unanswered_questions()) == 3
        assert [q.text for q in job.unanswered_questions()] == ["B?", "C?", "D?"]

    def test_reply_from_other_thread_starts_new_job(self, orch, planner, store) -> None:
        """Only a reply in the questioning job's thread answers it."""
        planner.queue("analyze", _questions("A?"))
        first = orch.intake("ou_1", "oc_1", "add auth", message_id="om_1")
        other = orch.intake("ou_1", "oc_1", "add logging", thread_id="om_9", message_id="om_10")
        assert other.id != first.id
        assert store.get(first.id).status == QUESTIONING

    def test_old_thread_found_after_many_newer_jobs(self, orch, planner, store) -> None:
        """A reply in an old questioning thread answers it however many jobs came since."""
        planner.queue("analyze", _questions("A?"))
        first = orch.intake("ou_1", "oc_1", "add auth", message_id="om_1")
        for i in range(60):
            orch.intake("ou_1", "oc_1", f"add thing {i}", message_id=f"om_x{i}")
        answered = orch.intake("ou_1", "oc_1", "GitHub", thread_id="om_1")
        assert answered.id == first.id
        assert answered.status == PENDING

    def test_other_user_in_thread_does_not_answer(self, orch, planner, store) -> None:
        planner.queue("analyze", _questions("A?"))
        first = orch.intake("ou_1", "oc_1", "add auth", message_id="om_1")
        other = orch.intake("ou_2", "oc_1", "add logging", thread_id="om_1")
        assert other.id != first.id
        assert store.get(first.id).status == QUESTIONING
        assert orch.intake("ou_1", "oc_1", "GitHub", thread_id="om_1").id == first.id

    def test_refine_config_error_fails_job(self, orch, planner, notifier) -> None:
        """A fatal refine error fails the questioning job with an error card."""
        planner.queue("analyze", _questions("A?"))
        planner.queue("refine", ConfigurationError("no key"))
        orch.intake("ou_1", "oc_1", "add auth", message_id="om_1")
        job = orch.intake("ou_1", "oc_1", "a", thread_id="om_1")
        assert job.status == FAILED
        assert job.completed_at is not None
        assert job.retry_count == 0
        assert notifier.titles()[-1] == "❌ Something went wrong"

    def test_refine_transient_error_queues_for_generate(self, orch, planner, store) -> None:
        """A retryable refine error queues the job; the drain generates using the answers."""
        planner.queue("analyze", _questions("Which provider?"))
        planner.queue("refine", ParseError("bad json"))
        orch.intake("ou_1", "oc_1", "add auth", message_id="om_1")
        job = orch.intake("ou_1", "oc_1", "GitHub", thread_id="om_1")
        assert job.status == PENDING
        assert job.context.code_changes is None
        assert orch.process_next().outcome == "completed"
        assert planner.calls[-1][0] == "generate"


class TestDrain:
    def test_empty_queue_is_no_work(self, orch, store) -> None:
        """process_next on an empty queue reports no_jobs."""
        result = orch.process_next()
        assert result.no_jobs
        assert result.to_dict() == {"status": "no_jobs"}

    def test_success_completes_job(self, orch, planner, applier, store, notifier) -> None:
        """Applied change-set: completed, result set, success card; the planner is not called again."""
        job = orch.intake("ou_1", "oc_1", "add a date formatter to utils.ts")
        calls_before = len(planner.calls)
        result = orch.process_next()
        assert result.to_dict() == {"status": "success", "job_id": job.id, "outcome": "completed"}
        done = store.get(job.id)
        assert done.status == COMPLETED
        assert done.result.pr_url == "https://github.com/owner/repo/pull/1"
        assert done.result.branch == "ai/changes-abc"
        assert done.completed_at >= done.started_at >= done.created_at
        assert len(planner.calls) == calls_before
        assert applier.calls[0][2:] == ("main", "create-pr")
        assert notifier.titles()[-1] == "✅ Task completed"

    def test_conflict_fails_without_retry(self, orch, applier, store, notifier, sleep) -> None:
        """Conflicts go straight to failed: retry_count untouched, no result, conflict card."""
        job = orch.intake("ou_1", "oc_1", "add x")
        applier.results.append(ConflictError(["src/utils.ts"]))
        result = orch.process_next()
        assert result.outcome == "failed"
        failed = store.get(job.id)
        assert failed.status == FAILED
        assert failed.retry_count == 0
        assert failed.result is None
        assert failed.completed_at is not None
        assert "src/utils.ts" in failed.error
        assert notifier.titles()[-1] == "⚠️ Merge conflict"
        assert "src/utils.ts" in str(notifier.sent[-1]["card"])
        sleep.assert_not_called()
        assert store.pending_count() == 0

    def test_branch_not_found_is_terminal(self, orch, applier, store, notifier) -> None:
        """A missing target branch fails the job without retrying."""
        job = orch.intake("ou_1", "oc_1", "branch: gone fix it")
        applier.results.append(BranchNotFoundError("gone", "owner/repo"))
        orch.process_next()
        failed = store.get(job.id)
        assert failed.status == FAILED
        assert failed.retry_count == 0
        assert "gone" in failed.error

    def test_transient_failure_requeues_with_backoff(self, orch, applier, store, notifier, sleep) -> None:
        """A transport error increments retry_count, sleeps the backoff and re-pends silently."""
        job = orch.intake("ou_1", "oc_1", "add x")
        cards_before = len(notifier.sent)
        applier.results.append(TransportError("502"))
        result = orch.process_next()
        assert result.outcome == "requeued"
        again = store.get(job.id)
        assert again.status == PENDING
        assert again.retry_count == 1
        assert again.error == "502"
        sleep.assert_called_once_with(120.0)
        assert len(notifier.sent) == cards_before
        assert store.pending_count() == 1

    def test_rate_limit_hint_extends_backoff(self, orch, applier, sleep) -> None:
        """A rate-limit retry-after longer than the backoff is honoured."""
        orch.intake("ou_1", "oc_1", "add x")
        applier.results.append(RateLimitError("github", 900))
        orch.process_next()
        sleep.assert_called_once_with(900)

    def test_three_failures_then_manual_retry(self, orch, applier, store, notifier) -> None:
        """Three transport failures end in failed with retry_count 3; manual retry re-queues without changing it."""
        job = orch.intake("ou_1", "oc_1", "add x")
        applier.results.extend([TransportError("down")] * 3)
        outcomes = [orch.process_next().outcome for _ in range(3)]
        assert outcomes == ["requeued", "requeued", "failed"]
        failed = store.get(job.id)
        assert failed.status == FAILED
        assert failed.retry_count == 3
        assert failed.completed_at is not None
        assert notifier.titles()[-1] == "❌ Something went wrong"

        retried = orch.retry(job.id)
        assert retried.status == PENDING
        assert retried.retry_count == 3
        assert retried.error is None
        assert retried.completed_at is None
        assert notifier.titles()[-1].endswith("Task status")
        assert orch.process_next().outcome == "completed"
        assert store.get(job.id).retry_count == 3

    def test_unclassified_error_is_retried(self, orch, applier, store) -> None:
        """Errors outside the taxonomy count as transient."""
        job = orch.intake("ou_1", "oc_1", "add x")
        applier.results.append(KeyError("sha"))
        assert orch.process_next().outcome == "requeued"
        assert store.get(job.id).retry_count == 1

    def test_update_branch_outcome_recorded(self, orch, applier, store) -> None:
        """update-branch results keep mode and branch; PR url may be absent."""
        job = orch.intake("ou_1", "oc_1", "branch: feature-x tweak")
        applier.results.append(
            ApplyOutcome(pr_url=None, branch="feature-x", summary="tweak", mode=MODE_UPDATE_BRANCH)
        )
        orch.process_next()
        done = store.get(job.id)
        assert done.result.mode == MODE_UPDATE_BRANCH
        assert done.result.pr_url is None

    def test_process_specific(self, orch, store) -> None:
        """process_specific handles a job out of order and refuses non-claimable ones."""
        a = orch.intake("ou_1", "oc_1", "add a")
        b = orch.intake("ou_1", "oc_1", "add b")
        result = orch.process_specific(b.id)
        assert result.job_id == b.id
        assert store.get(b.id).status == COMPLETED
        assert store.get(a.id).status == PENDING
        assert orch.process_specific("missing") is None

    def test_process_specific_refuses_questioning(self, orch, planner) -> None:
        """Questioning jobs cannot be forced through the drain."""
        planner.queue("analyze", _questions("A?"))
        job = orch.intake("ou_1", "oc_1", "add auth", message_id="om_1")
        assert orch.process_specific(job.id) is None


class TestRetryAndStatus:
    def test_retry_noop_for_active_jobs(self, orch, store) -> None:
        """retry on pending, questioning or processing jobs does nothing."""
        job = orch.intake("ou_1", "oc_1", "add x")
        assert orch.retry(job.id) is None
        store.dequeue_oldest_pending()
        assert orch.retry(job.id) is None
        assert store.get(job.id).status == PROCESSING
        assert orch.retry("missing") is None

    def test_retry_completed_clears_result(self, orch, store) -> None:
        """Re-running a completed job drops its result until it completes again."""
        job = orch.intake("ou_1", "oc_1", "add x")
        orch.process_next()
        retried = orch.retry(job.id)
        assert retried.status == PENDING
        assert retried.result is None

    def test_send_status(self, orch, notifier) -> None:
        """send_status renders the status card for the job's chat."""
        job = orch.intake("ou_1", "oc_1", "add x")
        assert orch.send_status(job.id) is True
        assert notifier.sent[-1]["recipient"] == "oc_1"
        assert "pending" in str(notifier.sent[-1]["card"])
        assert orch.send_status("missing") is False
        assert orch.status_card("missing") is None

    def test_get_and_list(self, orch) -> None:
        """get_job, require_job and list_user_jobs read through to the store."""
        job = orch.intake("ou_1", "oc_1", "add x")
        assert orch.get_job(job.id).id == job.id
        assert orch.get_job("missing") is None
        assert orch.require_job(job.id).id == job.id
        with pytest.raises(JobNotFoundError) as exc_info:
            orch.require_job("missing")
        assert exc_info.value.to_dict()["code"] == "JOB_NOT_FOUND"
        assert [j.id for j in orch.list_user_jobs("ou_1", 5)] == [job.id]

    def test_health_reports_queue_and_quota(self, store, planner, notifier) -> None:
        """health() adds the GitHub quota when the applier tracks one."""
        from larkbot.applier import GitHubApplier

        github = GitHubApplier(token="t")
        github.rate_limit.update({"x-ratelimit-remaining": "4999", "x-ratelimit-limit": "5000", "x-ratelimit-reset": "9"})
        orch = Orchestrator(
            store=store, planner=planner, applier=github, notifier=notifier, default_repo_url="https://github.com/owner/repo", sleep=Mock()
        )
        orch.intake("ou_1", "oc_1", "add x")
        health = orch.health()
        assert health["pending"] == 1
        assert health["github"]["remaining"] == 4999
        assert health["github"]["healthy"] is True
