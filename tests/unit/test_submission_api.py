from __future__ import annotations

import sys
from collections.abc import AsyncGenerator
from datetime import datetime, timezone
from pathlib import Path
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient

API_DIR = Path(__file__).resolve().parents[2]
if str(API_DIR) not in sys.path:
    sys.path.insert(0, str(API_DIR))

import main
from codeassess.db import get_async_session
from codeassess.deps import get_current_user, get_execution_client
from codeassess.execution import ExecutionResult, TransportError
from codeassess.models import Submission, SubmissionResult

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
CANDIDATE = SimpleNamespace(id=10, name="Cand", email="cand@example.com", role="candidate")
REVIEWER = SimpleNamespace(id=2, name="Rec", email="rec@example.com", role="recruiter")


def _result(rows: list[object] | None = None, scalars: list[object] | None = None, rowcount: int = 1):
    rows = rows or []
    scalars = scalars or []
    return SimpleNamespace(all=lambda: rows, scalars=lambda: SimpleNamespace(all=lambda: scalars), rowcount=rowcount)


class _FakeSession:
    def __init__(self, scalars: list[object] | None = None, results: list[object] | None = None) -> None:
        self._scalars = list(scalars or [])
        self._results = list(results or [])
        self.added: list[object] = []
        self.executed: list[object] = []
        self.commits = 0
        self.rollbacks = 0
        self._next_id = 100

    async def scalar(self, _query):  # noqa: ANN001
        if self._scalars:
            return self._scalars.pop(0)
        return None

    async def execute(self, query):  # noqa: ANN001
        self.executed.append(query)
        if self._results:
            return self._results.pop(0)
        return _result()

    def add(self, obj) -> None:  # noqa: ANN001
        self.added.append(obj)

    async def flush(self) -> None:
        return

    async def commit(self) -> None:
        self.commits += 1

    async def rollback(self) -> None:
        self.rollbacks += 1

    async def refresh(self, obj) -> None:  # noqa: ANN001
        if getattr(obj, "id", None) is None:
            self._next_id += 1
            obj.id = self._next_id
        for attr in ("created_at", "updated_at"):
            if getattr(obj, attr, None) is None:
                setattr(obj, attr, NOW)


class _FakeExecutionClient:
    def __init__(self, outputs: dict[str, object]) -> None:
        self._outputs = outputs
        self.calls: list[str] = []

    async def run(self, language: str, source: str, stdin: str, *, purpose: str = "candidate") -> ExecutionResult:
        self.calls.append(stdin)
        outcome = self._outputs[stdin]
        if isinstance(outcome, Exception):
            raise outcome
        return ExecutionResult(token=f"tok-{stdin}", status_id=3, stdout=str(outcome))


def _submission(**overrides: object) -> SimpleNamespace:
    values = {
        "id": 42,
        "candidate_id": CANDIDATE.id,
        "problem_id": 3,
        "code": "",
        "last_saved_code": "print(sum(map(int, input().split())))",
        "language": "python",
        "submission_status": "draft",
        "status": None,
        "passed_count": None,
        "total_count": None,
        "score": None,
        "evaluated": False,
        "evaluation_score": None,
        "evaluated_by_user_id": None,
        "evaluated_at": None,
        "submitted_at": None,
        "created_at": NOW,
        "updated_at": NOW,
    }
    values.update(overrides)
    return SimpleNamespace(**values)


def _testcase(testcase_id: int, stdin: str, expected: str, *, is_hidden: bool = False) -> SimpleNamespace:
    return SimpleNamespace(
        id=testcase_id, problem_id=3, input=stdin, output=expected, is_hidden=is_hidden, category="normal"
    )


def _assignment() -> SimpleNamespace:
    return SimpleNamespace(id=1, problem_id=3, user_id=CANDIDATE.id, assigned_at=NOW)


def _use(session: _FakeSession, *, user: SimpleNamespace = CANDIDATE, execution: _FakeExecutionClient | None = None) -> None:
    async def _session() -> AsyncGenerator[_FakeSession]:
        yield session

    async def _current_user() -> object:
        return user

    main.app.dependency_overrides[get_async_session] = _session
    main.app.dependency_overrides[get_current_user] = _current_user
    if execution is not None:
        main.app.dependency_overrides[get_execution_client] = lambda: execution


@pytest.fixture()
def client() -> TestClient:
    return TestClient(main.app)


@pytest.fixture(autouse=True)
def clear_overrides() -> None:
    yield
    main.app.dependency_overrides.clear()


def test_first_draft_save_creates_submission(client: TestClient) -> None:
    session = _FakeSession(scalars=[_assignment(), None])
    _use(session)

    response = client.post("/submissions/draft", json={"problem_id": 3, "code": "print(1)", "language": "Python"})

    assert response.status_code == 200
    body = response.json()
    assert body["submission_status"] == "draft"
    assert body["last_saved_code"] == "print(1)"
    assert body["language"] == "python"
    assert body["evaluation"]["evaluated"] is False
    assert isinstance(session.added[0], Submission)
    assert session.commits == 1


def test_later_draft_save_updates_same_submission(client: TestClient) -> None:
    draft = _submission(last_saved_code="print(1)")
    session = _FakeSession(scalars=[_assignment(), draft])
    _use(session)

    response = client.post("/submissions/draft", json={"problem_id": 3, "code": "print(2)", "language": "python"})

    assert response.status_code == 200
    assert response.json()["id"] == 42
    assert draft.last_saved_code == "print(2)"
    assert session.added == []


def test_draft_save_after_submit_is_rejected(client: TestClient) -> None:
    session = _FakeSession(scalars=[_assignment(), _submission(submission_status="submitted")])
    _use(session)

    response = client.post("/submissions/draft", json={"problem_id": 3, "code": "print(2)", "language": "python"})

    assert response.status_code == 409
    assert response.json()["code"] == "already_submitted"


def test_draft_save_requires_assignment(client: TestClient) -> None:
    _use(_FakeSession(scalars=[None]))

    response = client.post("/submissions/draft", json={"problem_id": 3, "code": "print(2)", "language": "python"})

    assert response.status_code == 404


@pytest.mark.parametrize(
    "payload",
    [
        {"problem_id": 3, "code": "", "language": "python"},
        {"problem_id": 3, "code": "x"},
        {"problem_id": 3, "code": "x", "language": "ruby"},
    ],
)
def test_draft_save_validates_fields(client: TestClient, payload: dict[str, object]) -> None:
    _use(_FakeSession())

    response = client.post("/submissions/draft", json=payload)

    assert response.status_code == 400


def test_recruiter_cannot_save_drafts(client: TestClient) -> None:
    _use(_FakeSession(), user=REVIEWER)

    response = client.post("/submissions/draft", json={"problem_id": 3, "code": "x", "language": "python"})

    assert response.status_code == 403


def test_run_uses_visible_testcases_and_keeps_draft(client: TestClient) -> None:
    draft = _submission()
    visible = [_testcase(1, "1 2", "3"), _testcase(2, "5 5", "10")]
    session = _FakeSession(scalars=[draft], results=[_result(scalars=visible)])
    execution = _FakeExecutionClient({"1 2": "3\n", "5 5": "10"})
    _use(session, execution=execution)

    response = client.post("/submissions/42/run")

    assert response.status_code == 200
    body = response.json()
    assert body["submission_status"] == "draft"
    assert [item["status"] for item in body["results"]] == ["Passed", "Passed"]
    assert body["results"][0]["stdout"] == "3"
    assert draft.submission_status == "draft"
    assert draft.score is None
    assert session.added == []
    assert execution.calls == ["1 2", "5 5"]


def test_run_saves_new_code_before_executing(client: TestClient) -> None:
    draft = _submission()
    session = _FakeSession(scalars=[draft], results=[_result(scalars=[_testcase(1, "1 2", "3")])])
    _use(session, execution=_FakeExecutionClient({"1 2": "3"}))

    response = client.post("/submissions/42/run", json={"code": "print(3)"})

    assert response.status_code == 200
    assert draft.last_saved_code == "print(3)"
    assert session.commits == 1


def test_run_reports_execution_errors_as_failed(client: TestClient) -> None:
    session = _FakeSession(scalars=[_submission()], results=[_result(scalars=[_testcase(1, "1 2", "3")])])
    _use(session, execution=_FakeExecutionClient({"1 2": TransportError("down", path="/submissions")}))

    response = client.post("/submissions/42/run")

    assert response.status_code == 200
    result = response.json()["results"][0]
    assert result["status"] == "Failed"
    assert "down" in result["error"]


def test_run_without_visible_testcases_is_rejected(client: TestClient) -> None:
    _use(_FakeSession(scalars=[_submission()], results=[_result(scalars=[])]), execution=_FakeExecutionClient({}))

    response = client.post("/submissions/42/run")

    assert response.status_code == 400


def test_run_on_submitted_submission_is_locked(client: TestClient) -> None:
    execution = _FakeExecutionClient({})
    _use(_FakeSession(scalars=[_submission(submission_status="submitted")]), execution=execution)

    response = client.post("/submissions/42/run")

    assert response.status_code == 409
    assert execution.calls == []


def test_submit_grades_all_testcases_and_records_results(client: TestClient) -> None:
    draft = _submission()
    testcases = [
        _testcase(1, "1 1", "2"),
        _testcase(2, "2 2", "4"),
        _testcase(3, "3 3", "6", is_hidden=True),
        _testcase(4, "4 4", "8", is_hidden=True),
        _testcase(5, "5 5", "10", is_hidden=True),
    ]
    session = _FakeSession(scalars=[draft], results=[_result(scalars=testcases), _result(rowcount=1)])
    execution = _FakeExecutionClient({"1 1": "2", "2 2": "4", "3 3": "6", "4 4": "8", "5 5": "11"})
    _use(session, execution=execution)

    response = client.post("/submissions/42/submit")

    assert response.status_code == 200
    body = response.json()
    assert (body["passed_count"], body["total_count"], body["score"]) == (4, 5, 80)
    assert body["status"] == "Partially Passed"

    transition = session.executed[1].compile().params
    assert transition["submission_status"] == "submitted"
    assert transition["score"] == 80
    assert transition["passed_count"] == 4
    assert "draft" in transition.values()

    recorded = [obj for obj in session.added if isinstance(obj, SubmissionResult)]
    assert [(r.testcase_id, r.status) for r in recorded] == [
        (1, "Passed"),
        (2, "Passed"),
        (3, "Passed"),
        (4, "Passed"),
        (5, "Failed"),
    ]
    assert recorded[4].actual_output == "11"
    assert session.commits == 1


def test_submit_loses_race_to_concurrent_submit(client: TestClient) -> None:
    session = _FakeSession(
        scalars=[_submission()],
        results=[_result(scalars=[_testcase(1, "1 1", "2")]), _result(rowcount=0)],
    )
    _use(session, execution=_FakeExecutionClient({"1 1": "2"}))

    response = client.post("/submissions/42/submit")

    assert response.status_code == 409
    assert response.json()["code"] == "already_submitted"
    assert session.rollbacks == 1
    assert session.commits == 0
    assert session.added == []


def test_submit_twice_is_rejected_without_running_code(client: TestClient) -> None:
    execution = _FakeExecutionClient({})
    _use(_FakeSession(scalars=[_submission(submission_status="submitted")]), execution=execution)

    response = client.post("/submissions/42/submit")

    assert response.status_code == 409
    assert execution.calls == []


def test_submit_without_testcases_conflicts(client: TestClient) -> None:
    session = _FakeSession(scalars=[_submission()], results=[_result(scalars=[])])
    _use(session, execution=_FakeExecutionClient({}))

    response = client.post("/submissions/42/submit")

    assert response.status_code == 409
    assert response.json()["code"] == "conflict"
    assert session.commits == 0


def test_submit_execution_failure_writes_nothing(client: TestClient) -> None:
    session = _FakeSession(
        scalars=[_submission()],
        results=[_result(scalars=[_testcase(1, "1 1", "2"), _testcase(2, "2 2", "4")])],
    )
    _use(session, execution=_FakeExecutionClient({"1 1": "2", "2 2": TransportError("down", path="/submissions")}))

    response = client.post("/submissions/42/submit")

    assert response.status_code == 502
    assert response.json()["code"] == "upstream_error"
    assert len(session.executed) == 1
    assert session.added == []
    assert session.commits == 0


def test_submitting_someone_elses_submission_is_not_found(client: TestClient) -> None:
    _use(_FakeSession(scalars=[_submission(candidate_id=99)]), execution=_FakeExecutionClient({}))

    response = client.post("/submissions/42/submit")

    assert response.status_code == 404


def test_viewing_someone_elses_submission_is_forbidden(client: TestClient) -> None:
    _use(_FakeSession(scalars=[_submission(candidate_id=99)]))

    response = client.get("/submissions/42")

    assert response.status_code == 403


def test_candidate_view_hides_hidden_testcase_content(client: TestClient) -> None:
    submission = _submission(submission_status="submitted", status="Partially Passed", score=50)
    problem = SimpleNamespace(id=3, title="Sum")
    rows = [
        (
            SimpleNamespace(id=1, testcase_id=1, actual_output="3", status="Passed", created_at=NOW),
            _testcase(1, "1 2", "3"),
        ),
        (
            SimpleNamespace(id=2, testcase_id=2, actual_output="7", status="Failed", created_at=NOW),
            _testcase(2, "secret", "8", is_hidden=True),
        ),
    ]
    _use(_FakeSession(scalars=[submission, CANDIDATE, problem], results=[_result(rows=rows)]))

    response = client.get("/submissions/42")

    assert response.status_code == 200
    body = response.json()
    assert body["problem"] == {"id": 3, "title": "Sum"}
    assert body["results"][0]["testcase"]["input"] == "1 2"
    assert body["results"][1]["status"] == "Failed"
    assert body["results"][1]["testcase"] is None
    assert body["results"][1]["actual_output"] == ""


def test_evaluation_records_reviewer_and_score(client: TestClient) -> None:
    submission = _submission(submission_status="submitted", score=80)
    session = _FakeSession(scalars=[submission])
    _use(session, user=REVIEWER)

    response = client.put("/submissions/42/evaluate", json={"score": 85})

    assert response.status_code == 200
    evaluation = response.json()["evaluation"]
    assert evaluation["evaluated"] is True
    assert evaluation["score"] == 85
    assert evaluation["evaluated_by_user_id"] == REVIEWER.id
    assert response.json()["score"] == 80
    assert session.commits == 1


@pytest.mark.parametrize("score", [101, -1, "abc", "85", 85.5, True, None])
def test_evaluation_rejects_invalid_scores(client: TestClient, score: object) -> None:
    submission = _submission(submission_status="submitted")
    _use(_FakeSession(scalars=[submission]), user=REVIEWER)

    response = client.put("/submissions/42/evaluate", json={"score": score})

    assert response.status_code == 400
    assert response.json()["code"] == "invalid_score"
    assert submission.evaluated is False


def test_evaluating_missing_submission_is_not_found(client: TestClient) -> None:
    _use(_FakeSession(scalars=[None]), user=REVIEWER)

    response = client.put("/submissions/42/evaluate", json={"score": 50})

    assert response.status_code == 404


def test_candidate_cannot_evaluate(client: TestClient) -> None:
    _use(_FakeSession(scalars=[_submission()]))

    response = client.put("/submissions/42/evaluate", json={"score": 50})

    assert response.status_code == 403
