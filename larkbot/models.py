"""Data models: jobs, clarification questions, change-sets and planner/applier results."""

from typing import Any, Dict, List, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator, model_validator

from larkbot.validation import check_file_path

PENDING = "pending"
QUESTIONING = "questioning"
PROCESSING = "processing"
COMPLETED = "completed"
FAILED = "failed"

QUEUED_STATUSES = (PENDING, PROCESSING)
TERMINAL_STATUSES = (COMPLETED, FAILED)

MODE_CREATE_PR = "create-pr"
MODE_UPDATE_BRANCH = "update-branch"

MAX_QUESTIONS = 3
MAX_FILES = 10

JobStatus = Literal["pending", "questioning", "processing", "completed", "failed"]
Mode = Literal["create-pr", "update-branch"]


class FileChange(BaseModel):
    """Full new content for one repository file."""

    path: str = Field(..., description="Repository-relative path")
    content: str = Field(..., description="Complete file content")

    @field_validator("path")
    @classmethod
    def _valid_path(cls, value: str) -> str:
        return check_file_path(value)


class ChangeSet(BaseModel):
    """Structured code change produced by the planner.

    Accepts both the planner's camelCase keys and stored snake_case keys.
    """

    model_config = ConfigDict(populate_by_name=True)

    plan: str = Field(..., min_length=1, description="Short description of the change")
    files: List[FileChange] = Field(..., min_length=1, max_length=MAX_FILES)
    commit_message: str = Field(default="chore: update files", alias="commitMessage")
    pr_title: str | None = Field(default=None, alias="prTitle")
    pr_body: str | None = Field(default=None, alias="prBody")

    @field_validator("commit_message", mode="before")
    @classmethod
    def _default_commit_message(cls, value: Any) -> Any:
        if not value or not isinstance(value, str):
            return "chore: update files"
        return value

    @model_validator(mode="after")
    def _fill_pr_text(self) -> "ChangeSet":
        if not self.pr_title:
            self.pr_title = self.plan[:50]
        self.pr_title = self.pr_title[:100]
        self.commit_message = self.commit_message[:200]
        if not self.pr_body:
            self.pr_body = self.plan
        return self

    @property
    def paths(self) -> List[str]:
        return [f.path for f in self.files]


class QuestionDraft(BaseModel):
    """Clarification question as returned by the planner (not yet asked)."""

    id: str = Field(..., min_length=1)
    text: str = Field(..., min_length=1, max_length=500)


class NeedsQuestions(BaseModel):
    """Planner needs answers before it can produce a change-set."""

    model_config = ConfigDict(populate_by_name=True)

    needs_questions: Literal[True] = Field(default=True, alias="needsQuestions")
    questions: List[QuestionDraft] = Field(..., min_length=1)

    @field_validator("questions")
    @classmethod
    def _cap_questions(cls, value: List[QuestionDraft]) -> List[QuestionDraft]:
        return value[:MAX_QUESTIONS]


class ReadyChangeSet(BaseModel):
    """Planner produced a final change-set."""

    model_config = ConfigDict(populate_by_name=True)

    needs_questions: Literal[False] = Field(default=False, alias="needsQuestions")
    code_changes: ChangeSet = Field(..., alias="codeChanges")


PlanResult = Union[NeedsQuestions, ReadyChangeSet]

_plan_result_adapter: TypeAdapter[PlanResult] = TypeAdapter(PlanResult)


def parse_plan_result(data: Any) -> PlanResult:
    """Validate a raw planner response dict into NeedsQuestions or ReadyChangeSet.

    Raises pydantic.ValidationError on malformed input.
    """
    return _plan_result_adapter.validate_python(data)


class Question(BaseModel):
    """Clarification item in a job's dialogue. Answered once ``answer`` is set."""

    id: str
    text: str
    asked_at: int = Field(..., description="Epoch ms when the question was sent")
    answer: str | None = None

    @property
    def answered(self) -> bool:
        return self.answer is not None


class JobContext(BaseModel):
    """Where and how a job applies its changes."""

    repo_url: str
    branch: str | None = None
    mode: Mode = MODE_CREATE_PR
    files: List[str] | None = None
    existing_files: Dict[str, str] | None = Field(
        default=None,
        description="Repository snapshot (path -> content) used as planner context",
    )
    code_changes: ChangeSet | None = Field(default=None, description="Resolved change-set once planning completes")


class JobResult(BaseModel):
    """Outcome of a completed job."""

    pr_url: str | None = None
    branch: str
    summary: str
    mode: Mode = MODE_CREATE_PR


class Job(BaseModel):
    """Unit of work: one chat instruction from intake to terminal resolution."""

    model_config = ConfigDict(extra="forbid")

    id: str
    user_id: str
    chat_id: str | None = None
    message: str
    context: JobContext
    status: JobStatus = PENDING
    questions: List[Question] = Field(default_factory=list)
    result: JobResult | None = None
    error: str | None = None
    retry_count: int = 0
    created_at: int
    started_at: int | None = None
    completed_at: int | None = None
    thread_id: str | None = None
    parent_message_id: str | None = None

    @property
    def recipient(self) -> str:
        """Chat to reply to; the requester directly when no chat is known."""
        return self.chat_id or self.user_id

    def unanswered_questions(self) -> List[Question]:
        return [q for q in self.questions if not q.answered]

    def answered_questions(self) -> List[Question]:
        return [q for q in self.questions if q.answered]


class ApplyOutcome(BaseModel):
    """What the change applier did upstream."""

    pr_url: str | None = None
    branch: str
    summary: str
    mode: Mode = MODE_CREATE_PR


class ProcessResult:
    """Result of one drain invocation."""

    def __init__(self, job_id: str | None = None, outcome: str | None = None) -> None:
        self.job_id = job_id
        self.outcome = outcome

    @property
    def no_jobs(self) -> bool:
        return self.job_id is None

    def to_dict(self) -> Dict[str, Any]:
        if self.no_jobs:
            return {"status": "no_jobs"}
        return {"status": "success", "job_id": self.job_id, "outcome": self.outcome}

    def __repr__(self) -> str:
        return f"ProcessResult(job_id={self.job_id!r}, outcome={self.outcome!r})"
