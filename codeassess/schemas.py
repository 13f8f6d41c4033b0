from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    error: str
    code: str


class LoginRequest(BaseModel):
    email: str
    password: str


class RegisterRequest(BaseModel):
    name: str
    email: str
    password: str


class UserSummary(BaseModel):
    id: int
    name: str
    email: str
    role: str


class AuthTokenResponse(BaseModel):
    token: str
    token_type: str = "bearer"
    user: UserSummary


class UserCreate(BaseModel):
    name: str
    email: str
    password: str
    role: str | None = None


class UserUpdate(BaseModel):
    name: str | None = None
    email: str | None = None
    password: str | None = None
    role: str | None = None


class ProblemCreate(BaseModel):
    title: str
    statement: str
    constraints: Any = None
    reference_solution: str
    reference_language: str
    time_limit_minutes: int = Field(ge=1, le=24 * 60)


class ProblemUpdate(BaseModel):
    title: str | None = None
    statement: str | None = None
    constraints: Any = None
    reference_solution: str | None = None
    reference_language: str | None = None
    time_limit_minutes: int | None = Field(default=None, ge=1, le=24 * 60)


class ProblemListItem(BaseModel):
    id: int
    title: str
    reference_language: str
    time_limit_minutes: int
    assigned: bool = False
    ai_generated_testcases_count: int = 0
    created_at: datetime


class AssignedProblemItem(BaseModel):
    id: int
    title: str
    statement: str
    constraints: Any = None
    time_limit_minutes: int
    assigned: bool = True
    submitted: bool = False
    latest_submission_score: int | None = None
    latest_submission_id: int | None = None
    draft_submission_id: int | None = None
    assigned_at: datetime


class ProblemResponse(BaseModel):
    id: int
    title: str
    statement: str
    constraints: Any = None
    reference_language: str
    reference_solution: str | None = None
    time_limit_minutes: int
    created_by: int | None = None
    created_at: datetime


class VisibleTestcase(BaseModel):
    id: int
    input: str
    output: str


class ProblemDetail(BaseModel):
    problem: ProblemResponse
    ai_generated_testcases_count: int
    visible_testcases: list[VisibleTestcase]


class TestcaseCreate(BaseModel):
    __test__ = False

    input: str
    output: str
    is_hidden: bool = True
    category: str = "normal"


class TestcaseUpdate(BaseModel):
    __test__ = False

    input: str | None = None
    output: str | None = None
    is_hidden: bool | None = None
    category: str | None = None


class TestcaseResponse(BaseModel):
    __test__ = False

    id: int
    problem_id: int
    input: str
    output: str
    is_hidden: bool
    category: str
    generated_by: str
    created_at: datetime


class GenerateTestcasesRequest(BaseModel):
    normal_count: int = Field(default=3, ge=0, le=20, alias="normalCount")
    edge_count: int = Field(default=2, ge=0, le=20, alias="edgeCount")
    random_count: int = Field(default=2, ge=0, le=20, alias="randomCount")

    model_config = {"populate_by_name": True}


class GenerateTestcasesResponse(BaseModel):
    ok: bool = True
    counts: dict[str, int]


class AssignRequest(BaseModel):
    user_ids: list[int] = Field(default_factory=list, alias="userIds")

    model_config = {"populate_by_name": True}


class AssignResponse(BaseModel):
    ok: bool = True
    assigned: int


class DraftSaveRequest(BaseModel):
    problem_id: int | None = None
    code: str | None = None
    language: str | None = None


class RunRequest(BaseModel):
    code: str | None = None
    language: str | None = None


class EvaluationRequest(BaseModel):
    score: Any = None


class EvaluationResponse(BaseModel):
    evaluated: bool
    score: int | None = None
    evaluated_by_user_id: int | None = None
    evaluated_at: datetime | None = None


class SubmissionResponse(BaseModel):
    id: int
    candidate_id: int
    problem_id: int
    code: str
    last_saved_code: str
    language: str
    submission_status: str
    status: str | None = None
    passed_count: int | None = None
    total_count: int | None = None
    score: int | None = None
    evaluation: EvaluationResponse
    submitted_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class RunResultItem(BaseModel):
    testcase_id: int
    expected: str
    stdout: str
    stderr: str
    status: str
    error: str | None = None


class RunResponse(BaseModel):
    submission_id: int
    submission_status: str
    results: list[RunResultItem]


class SubmitResponse(BaseModel):
    submission: SubmissionResponse
    passed_count: int
    total_count: int
    status: str
    score: int


class ResultTestcase(BaseModel):
    id: int
    input: str
    output: str
    category: str
    is_hidden: bool


class SubmissionResultItem(BaseModel):
    id: int
    testcase_id: int
    actual_output: str
    status: str
    created_at: datetime
    testcase: ResultTestcase | None = None


class ProblemRef(BaseModel):
    id: int
    title: str


class SubmissionDetail(SubmissionResponse):
    candidate: UserSummary | None = None
    problem: ProblemRef | None = None
    results: list[SubmissionResultItem] = Field(default_factory=list)


class AdminStatsResponse(BaseModel):
    problems_count: int
    candidates_count: int
    assignments_count: int
    submissions_count: int
    pass_rate: int


class RecentSubmissionItem(BaseModel):
    id: int
    score: int | None = None
    status: str | None = None
    submission_status: str
    created_at: datetime
    candidate: UserSummary | None = None
    problem: ProblemRef | None = None


class AdminAuditLogResponse(BaseModel):
    id: int
    actor_user_id: int | None = None
    action: str
    resource_type: str
    resource_id: str | None = None
    method: str
    path: str
    request_id: str | None = None
    client_ip: str | None = None
    user_agent: str | None = None
    metadata_json: dict[str, Any] | None = None
    created_at: datetime
