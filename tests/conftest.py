"""Shared fixtures: in-memory collaborators for orchestrator tests and a
minimal Redis double for the Redis job store."""

from pathlib import Path
from typing import Any, Callable, Dict, List

import pytest

from larkbot.applier.base import ChangeApplier
from larkbot.models import ApplyOutcome, ChangeSet, FileChange, ReadyChangeSet
from larkbot.notifier.base import Notifier
from larkbot.planner.base import Planner
from larkbot.store.file_store import FileJobStore


class Clock:
    """Deterministic millisecond clock; each call advances by step."""

    def __init__(self, start: int = 1_700_000_000_000, step: int = 1) -> None:
        self.now = start
        self.step = step

    def __call__(self) -> int:
        self.now += self.step
        return self.now


def make_change_set(plan: str = "Add date formatter", path: str = "src/utils.ts") -> ChangeSet:
    return ChangeSet(
        plan=plan,
        files=[FileChange(path=path, content="export const fmt = () => '';\n")],
        commit_message="feat: add date formatter",
    )


class ScriptedPlanner(Planner):
    """Returns queued results (or raises queued exceptions) per operation."""

    def __init__(self) -> None:
        self.scripts: Dict[str, List[Any]] = {"analyze": [], "refine": [], "generate": []}
        self.calls: List[tuple] = []

    def queue(self, op: str, *results: Any) -> None:
        self.scripts[op].extend(results)

    def _next(self, op: str) -> Any:
        if not self.scripts[op]:
            if op == "generate":
                return make_change_set()
            return ReadyChangeSet(code_changes=make_change_set())
        item = self.scripts[op].pop(0)
        if isinstance(item, BaseException):
            raise item
        return item

    def analyze(self, message, context):
        self.calls.append(("analyze", message))
        return self._next("analyze")

    def refine(self, answer, questions, context, message):
        self.calls.append(("refine", answer, [q.model_copy() for q in questions]))
        return self._next("refine")

    def generate(self, message, context, questions=None):
        self.calls.append(("generate", message, context))
        return self._next("generate")


class ScriptedApplier(ChangeApplier):
    def __init__(self) -> None:
        self.results: List[Any] = []
        self.calls: List[tuple] = []
        self.fetch_calls: List[tuple] = []
        self.files: Dict[str, str] = {"README.md": "# repo\n"}

    def apply(self, repo_url, change_set, target_branch, mode):
        self.calls.append((repo_url, change_set, target_branch, mode))
        if self.results:
            item = self.results.pop(0)
            if isinstance(item, BaseException):
                raise item
            return item
        return ApplyOutcome(
            pr_url="https://github.com/owner/repo/pull/1",
            branch="ai/changes-abc",
            summary=change_set.plan,
            mode=mode,
        )

    def fetch_repository_files(self, repo_url, branch=None, max_files=20):
        self.fetch_calls.append((repo_url, branch))
        return dict(self.files)


class RecordingNotifier(Notifier):
    def __init__(self) -> None:
        self.sent: List[Dict[str, Any]] = []
        self.fail = False

    def notify(self, recipient, card):
        if self.fail:
            raise RuntimeError("lark down")
        self.sent.append({"recipient": recipient, "thread_id": None, "card": card})

    def notify_thread(self, recipient, thread_id, card):
        if self.fail:
            raise RuntimeError("lark down")
        self.sent.append({"recipient": recipient, "thread_id": thread_id, "card": card})

    def titles(self) -> List[str]:
        return [s["card"]["card"]["header"]["title"]["content"] for s in self.sent]


class FakePipeline:
    """Buffers commands until execute(); get()/zscore() are immediate (WATCH phase)."""

    def __init__(self, redis: "FakeRedis") -> None:
        self._redis = redis
        self._ops: List[Callable[[], Any]] = []

    def get(self, key):
        return self._redis.get(key)

    def zscore(self, key, member):
        return self._redis.zscore(key, member)

    def multi(self) -> None:
        pass

    def set(self, key, value, nx=False):
        self._ops.append(lambda: self._redis.set(key, value, nx=nx))

    def zadd(self, key, mapping):
        self._ops.append(lambda: self._redis.zadd(key, mapping))

    def zrem(self, key, member):
        self._ops.append(lambda: self._redis.zrem(key, member))

    def lpush(self, key, value):
        self._ops.append(lambda: self._redis.lpush(key, value))

    def execute(self):
        results = [op() for op in self._ops]
        self._ops = []
        return results


class FakeRedis:
    """The subset of redis.Redis the job store uses, with decode_responses semantics.

    Writes bump a per-key version so transaction() can replay WATCH: if a
    watched key changed between the callable's reads and EXEC, the callable
    runs again. Callables queued in ``interleave`` run once in that gap,
    standing in for a concurrent client.
    """

    def __init__(self) -> None:
        self.strings: Dict[str, str] = {}
        self.zsets: Dict[str, Dict[str, float]] = {}
        self.lists: Dict[str, List[str]] = {}
        self.versions: Dict[str, int] = {}
        self.interleave: List[Callable[[], Any]] = []

    def _touch(self, key) -> None:
        self.versions[key] = self.versions.get(key, 0) + 1

    def get(self, key):
        return self.strings.get(key)

    def set(self, key, value, nx=False):
        if nx and key in self.strings:
            return None
        self.strings[key] = value
        self._touch(key)
        return True

    def zadd(self, key, mapping):
        z = self.zsets.setdefault(key, {})
        added = sum(1 for m in mapping if m not in z)
        z.update(mapping)
        self._touch(key)
        return added

    def zrem(self, key, member):
        if self.zsets.get(key, {}).pop(member, None) is None:
            return 0
        self._touch(key)
        return 1

    def zscore(self, key, member):
        return self.zsets.get(key, {}).get(member)

    def zcard(self, key):
        return len(self.zsets.get(key, {}))

    def zpopmin(self, key, count=1):
        z = self.zsets.get(key, {})
        items = sorted(z.items(), key=lambda kv: (kv[1], kv[0]))[:count]
        for member, _ in items:
            del z[member]
        if items:
            self._touch(key)
        return items

    def lpush(self, key, value):
        self.lists.setdefault(key, []).insert(0, value)
        self._touch(key)
        return len(self.lists[key])

    def lrange(self, key, start, end):
        items = self.lists.get(key, [])
        return items[start : end + 1 if end >= 0 else None]

    def pipeline(self, transaction=True):
        return FakePipeline(self)

    def transaction(self, func, *watches, value_from_callable=False):
        while True:
            seen = {key: self.versions.get(key, 0) for key in watches}
            pipe = FakePipeline(self)
            value = func(pipe)
            others, self.interleave = self.interleave, []
            for other in others:
                other()
            if any(self.versions.get(key, 0) != version for key, version in seen.items()):
                continue
            pipe.execute()
            return value if value_from_callable else None


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def store(tmp_path: Path, clock: Clock) -> FileJobStore:
    return FileJobStore(tmp_path / "data", clock=clock)


@pytest.fixture
def planner() -> ScriptedPlanner:
    return ScriptedPlanner()


@pytest.fixture
def applier() -> ScriptedApplier:
    return ScriptedApplier()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()
