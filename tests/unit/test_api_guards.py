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
from codeassess.deps import get_current_user
from codeassess.security import decode_access_token, hash_password

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


class _FakeSession:
    def __init__(self, scalars: list[object] | None = None) -> None:
        self._scalars = list(scalars or [])
        self.added: list[object] = []
        self.deleted: list[object] = []
        self.executed: list[object] = []
        self.commits = 0

    async def scalar(self, _query):  # noqa: ANN001
        if self._scalars:
            return self._scalars.pop(0)
        return None

    async def execute(self, query):  # noqa: ANN001
        self.executed.append(query)
        return SimpleNamespace(all=lambda: [], scalars=lambda: SimpleNamespace(all=lambda: []), rowcount=0)

    def add(self, obj) -> None:  # noqa: ANN001
        self.added.append(obj)

    async def delete(self, obj) -> None:  # noqa: ANN001
        self.deleted.append(obj)

    async def flush(self) -> None:
        return

    async def commit(self) -> None:
        self.commits += 1

    async def rollback(self) -> None:
        return

    async def refresh(self, obj) -> None:  # noqa: ANN001
        if getattr(obj, "id", None) is None:
            obj.id = 1
        if getattr(obj, "created_at", None) is None:
            obj.created_at = NOW


def _user(user_id: int, role: str) -> SimpleNamespace:
    return SimpleNamespace(id=user_id, name=role.title(), email=f"{role}{user_id}@example.com", role=role)


def _problem(**overrides: object) -> SimpleNamespace:
    values = {
        "id": 3,
        "title": "Sum",
        "statement": "Add two numbers",
        "constraints": {"a": "0..100"},
        "reference_solution": "print(sum(map(int, input().split())))",
        "reference_language": "python",
        "time_limit_minutes": 30,
        "created_by": 1,
        "created_at": NOW,
    }
    values.update(overrides)
    return SimpleNamespace(**values)


def _override_session(session: _FakeSession) -> None:
    async def _session() -> AsyncGenerator[_FakeSession]:
        yield session

    main.app.dependency_overrides[get_async_session] = _session


def _login_as(user: SimpleNamespace) -> None:
    async def _current_user() -> object:
        return user

    main.app.dependency_overrides[get_current_user] = _current_user


@pytest.fixture()
def client() -> TestClient:
    _override_session(_FakeSession())
    return TestClient(main.app)


@pytest.fixture(autouse=True)
def clear_overrides() -> None:
    yield
    main.app.dependency_overrides.clear()


def test_health_echoes_request_id(client: TestClient) -> None:
    response = client.get("/health", headers={"X-Request-ID": "req-123"})

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}
    assert response.headers["X-Request-ID"] == "req-123"


def test_missing_token_is_unauthorized(client: TestClient) -> None:
    response = client.get("/auth/me")

    assert response.status_code == 401
    assert response.json() == {"error": "Missing token", "code": "auth_error"}


def test_invalid_request_body_is_a_400_with_error_shape(client: TestClient) -> None:
    response = client.post("/auth/login", json={})

    assert response.status_code == 400
    assert response.json()["code"] == "validation_error"


def test_login_rate_limit_returns_429(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(main, "is_login_rate_limited", lambda _key: True)

    response = client.post("/auth/login", json={"email": "a@example.com", "password": "whatever1"})

    assert response.status_code == 429
    assert response.json()["code"] == "rate_limited"


def test_login_issues_token_for_valid_credentials(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    user = SimpleNamespace(
        id=7, name="Cand", email="cand@example.com", role="candidate", password_hash=hash_password("secret123")
    )
    _override_session(_FakeSession(scalars=[user]))
    monkeypatch.setattr(main, "is_login_rate_limited", lambda _key: False)
    monkeypatch.setattr(main, "reset_login_attempts", lambda _key: None)

    response = client.post("/auth/login", json={"email": "Cand@Example.com", "password": "secret123"})

    assert response.status_code == 200
    body = response.json()
    assert body["user"] == {"id": 7, "name": "Cand", "email": "cand@example.com", "role": "candidate"}
    claims = decode_access_token(body["token"])
    assert claims["sub"] == "cand@example.com"
    assert claims["role"] == "candidate"


def test_login_rejects_wrong_password(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    user = SimpleNamespace(id=7, name="Cand", email="cand@example.com", role="candidate", password_hash=hash_password("secret123"))
    _override_session(_FakeSession(scalars=[user]))
    monkeypatch.setattr(main, "is_login_rate_limited", lambda _key: False)

    response = client.post("/auth/login", json={"email": "cand@example.com", "password": "nope-nope"})

    assert response.status_code == 401


def test_register_always_creates_a_candidate(client: TestClient) -> None:
    session = _FakeSession(scalars=[None])
    _override_session(session)

    response = client.post("/auth/register", json={"name": "New", "email": "new@example.com", "password": "longenough"})

    assert response.status_code == 201
    assert response.json()["user"]["role"] == "candidate"
    assert session.added[0].role == "candidate"


def test_register_duplicate_email_conflicts(client: TestClient) -> None:
    _override_session(_FakeSession(scalars=[_user(2, "candidate")]))

    response = client.post("/auth/register", json={"name": "New", "email": "new@example.com", "password": "longenough"})

    assert response.status_code == 409


def test_candidate_cannot_create_problem(client: TestClient) -> None:
    _login_as(_user(10, "candidate"))

    response = client.post(
        "/problems",
        json={
            "title": "Sum",
            "statement": "s",
            "reference_solution": "x",
            "reference_language": "python",
            "time_limit_minutes": 30,
        },
    )

    assert response.status_code == 403
    assert response.json()["code"] == "forbidden"


def test_create_problem_rejects_unsupported_language(client: TestClient) -> None:
    _login_as(_user(1, "admin"))

    response = client.post(
        "/problems",
        json={
            "title": "Sum",
            "statement": "s",
            "reference_solution": "x",
            "reference_language": "ruby",
            "time_limit_minutes": 30,
        },
    )

    assert response.status_code == 400


def test_create_problem_duplicate_title_conflicts(client: TestClient) -> None:
    _login_as(_user(1, "recruiter"))
    _override_session(_FakeSession(scalars=[_problem()]))

    response = client.post(
        "/problems",
        json={
            "title": "Sum",
            "statement": "s",
            "reference_solution": "x",
            "reference_language": "python",
            "time_limit_minutes": 30,
        },
    )

    assert response.status_code == 409


def test_create_problem_parses_string_constraints(client: TestClient) -> None:
    _login_as(_user(1, "admin"))
    session = _FakeSession(scalars=[None])
    _override_session(session)

    response = client.post(
        "/problems",
        json={
            "title": "Sum",
            "statement": "s",
            "constraints": "1 <= n <= 10",
            "reference_solution": "x",
            "reference_language": "Python",
            "time_limit_minutes": 30,
        },
    )

    assert response.status_code == 201
    body = response.json()
    assert body["constraints"] == {"text": "1 <= n <= 10"}
    assert body["reference_language"] == "python"
    assert session.commits == 1


def test_candidate_cannot_see_unassigned_problem(client: TestClient) -> None:
    _login_as(_user(10, "candidate"))
    _override_session(_FakeSession(scalars=[_problem(), None]))

    response = client.get("/problems/3")

    assert response.status_code == 404


def test_assigned_candidate_does_not_see_reference_solution(client: TestClient) -> None:
    _login_as(_user(10, "candidate"))
    assignment = SimpleNamespace(id=1, problem_id=3, user_id=10, assigned_at=NOW)
    _override_session(_FakeSession(scalars=[_problem(), assignment, 0]))

    response = client.get("/problems/3")

    assert response.status_code == 200
    body = response.json()
    assert body["problem"]["reference_solution"] is None
    assert body["visible_testcases"] == []


def test_recruiter_cannot_create_admin(client: TestClient) -> None:
    _login_as(_user(2, "recruiter"))

    response = client.post(
        "/auth/users",
        json={"name": "Boss", "email": "boss@example.com", "password": "password1", "role": "admin"},
    )

    assert response.status_code == 403


def test_recruiter_cannot_update_non_candidate(client: TestClient) -> None:
    _login_as(_user(2, "recruiter"))
    _override_session(_FakeSession(scalars=[_user(1, "admin")]))

    response = client.put("/auth/users/1", json={"name": "Renamed"})

    assert response.status_code == 403


def test_editing_graded_testcase_is_locked(client: TestClient) -> None:
    _login_as(_user(1, "admin"))
    testcase = SimpleNamespace(id=9, problem_id=3, input="1", output="1", is_hidden=True, category="normal")
    _override_session(_FakeSession(scalars=[testcase, 2]))

    response = client.put("/problems/testcases/9", json={"output": "2"})

    assert response.status_code == 409
    assert response.json()["code"] == "testcase_locked"
    assert testcase.output == "1"


def _testcase_row(**overrides: object) -> SimpleNamespace:
    values = {
        "id": 9,
        "problem_id": 3,
        "input": "1",
        "output": "1",
        "is_hidden": True,
        "category": "normal",
        "generated_by": "manual",
        "created_at": NOW,
    }
    values.update(overrides)
    return SimpleNamespace(**values)


def test_deleting_graded_testcase_is_locked(client: TestClient) -> None:
    _login_as(_user(1, "admin"))
    session = _FakeSession(scalars=[_testcase_row(), 1])
    _override_session(session)

    response = client.delete("/problems/testcases/9")

    assert response.status_code == 409
    assert response.json()["code"] == "testcase_locked"
    assert session.deleted == []
    assert session.commits == 0


def test_editing_ungraded_testcase_succeeds(client: TestClient) -> None:
    _login_as(_user(1, "admin"))
    testcase = _testcase_row()
    session = _FakeSession(scalars=[testcase, 0])
    _override_session(session)

    response = client.put("/problems/testcases/9", json={"output": "2", "is_hidden": False, "category": "Edge"})

    assert response.status_code == 200
    assert response.json()["output"] == "2"
    assert (testcase.output, testcase.is_hidden, testcase.category) == ("2", False, "edge")
    assert session.commits == 1


def test_deleting_ungraded_testcase_succeeds(client: TestClient) -> None:
    _login_as(_user(1, "admin"))
    testcase = _testcase_row()
    session = _FakeSession(scalars=[testcase, 0])
    _override_session(session)

    response = client.delete("/problems/testcases/9")

    assert response.status_code == 204
    assert session.deleted == [testcase]
    assert session.commits == 1


def test_deleting_problem_removes_children_first(client: TestClient) -> None:
    _login_as(_user(1, "admin"))
    session = _FakeSession(scalars=[_problem()])
    _override_session(session)

    response = client.delete("/problems/3")

    assert response.status_code == 204
    assert [statement.table.name for statement in session.executed] == [
        "submission_results",
        "submissions",
        "testcases",
        "assignments",
        "problems",
    ]
    assert session.commits == 1


def test_deleting_missing_problem_is_not_found(client: TestClient) -> None:
    _login_as(_user(1, "admin"))
    session = _FakeSession(scalars=[None])
    _override_session(session)

    response = client.delete("/problems/3")

    assert response.status_code == 404
    assert session.executed == []


def test_regenerating_graded_problem_is_locked(client: TestClient) -> None:
    _login_as(_user(1, "admin"))
    _override_session(_FakeSession(scalars=[_problem(), 4]))

    response = client.post("/problems/3/generate-testcases", json={"normalCount": 2})

    assert response.status_code == 409
    assert response.json()["code"] == "testcase_locked"


def test_admin_stats_pass_rate_counts_passed_submissions(client: TestClient) -> None:
    _login_as(_user(1, "admin"))
    _override_session(_FakeSession(scalars=[2, 5, 4, 10, 8, 6]))

    response = client.get("/admin/stats")

    assert response.status_code == 200
    assert response.json() == {
        "problems_count": 2,
        "candidates_count": 5,
        "assignments_count": 4,
        "submissions_count": 10,
        "pass_rate": 75,
    }


def test_candidate_cannot_read_admin_stats(client: TestClient) -> None:
    _login_as(_user(10, "candidate"))

    response = client.get("/admin/stats")

    assert response.status_code == 403
