from __future__ import annotations

import json
import time
from contextlib import asynccontextmanager
from typing import Annotated, Any
from uuid import uuid4

from fastapi import Body, Depends, FastAPI, Query, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import delete, func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.exceptions import HTTPException as StarletteHTTPException

from codeassess.config import ALLOWED_ORIGINS, DB_CREATE_ALL, access_token_ttl
from codeassess.db import check_db_connection, create_all_tables, get_async_session
from codeassess.deps import (
    get_current_user,
    get_execution_client,
    get_testcase_generator,
    require_candidate,
    require_manager,
)
from codeassess.errors import (
    AuthError,
    ConflictError,
    ForbiddenError,
    NotFound,
    ServiceError,
    TooManyRequests,
    ValidationError,
)
from codeassess.execution import ExecutionClient, is_supported_language
from codeassess.generator import TestcaseGenerator
from codeassess.grading import percentage
from codeassess.models import (
    AdminAuditLog,
    Assignment,
    GradeStatus,
    Problem,
    Submission,
    SubmissionResult,
    SubmissionState,
    Testcase,
    TestcaseOrigin,
    User,
    UserRole,
)
from codeassess.observability import get_logger, log_event
from codeassess.ratelimit import check_redis_connection, is_login_rate_limited, reset_login_attempts
from codeassess.schemas import (
    AdminAuditLogResponse,
    AdminStatsResponse,
    AssignedProblemItem,
    AssignRequest,
    AssignResponse,
    AuthTokenResponse,
    DraftSaveRequest,
    ErrorResponse,
    EvaluationRequest,
    EvaluationResponse,
    GenerateTestcasesRequest,
    GenerateTestcasesResponse,
    LoginRequest,
    ProblemCreate,
    ProblemDetail,
    ProblemListItem,
    ProblemRef,
    ProblemResponse,
    ProblemUpdate,
    RecentSubmissionItem,
    RegisterRequest,
    ResultTestcase,
    RunRequest,
    RunResponse,
    RunResultItem,
    SubmissionDetail,
    SubmissionResponse,
    SubmissionResultItem,
    SubmitResponse,
    TestcaseCreate,
    TestcaseResponse,
    TestcaseUpdate,
    UserCreate,
    UserSummary,
    UserUpdate,
    VisibleTestcase,
)
from codeassess.security import create_access_token, hash_password, verify_password
from codeassess.submissions import (
    get_submission_for_viewer,
    run_submission,
    save_draft,
    set_evaluation,
    submit_submission,
)
from codeassess.testcases import (
    create_testcase,
    delete_testcase,
    generate_testcases,
    list_authoring_testcases,
    update_testcase,
)

logger = get_logger()


@asynccontextmanager
async def lifespan(_: FastAPI):
    if DB_CREATE_ALL:
        await create_all_tables()
        log_event(logger, "db.tables_created")
    yield


app = FastAPI(lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type"],
)

_ROLES = {role.value for role in UserRole}


def _error_body(message: str, code: str) -> dict[str, str]:
    return ErrorResponse(error=message, code=code).model_dump()


@app.exception_handler(ServiceError)
async def handle_service_error(request: Request, exc: ServiceError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(
            "request.failed",
            exc_info=exc,
            extra={"extra_data": {"path": request.url.path, "code": exc.code}},
        )
    return JSONResponse(status_code=exc.status_code, content=_error_body(exc.message, exc.code))


@app.exception_handler(StarletteHTTPException)
async def handle_http_exception(_: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=_error_body(str(exc.detail), f"http_{exc.status_code}"))


@app.exception_handler(RequestValidationError)
async def handle_request_validation(_: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    if errors:
        first = errors[0]
        location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = f"Invalid request: {location} {first.get('msg', '')}".strip()
    else:
        message = "Invalid request"
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=_error_body(message, "validation_error"))


@app.exception_handler(Exception)
async def handle_unexpected(request: Request, exc: Exception) -> JSONResponse:
    logger.error("request.unhandled", exc_info=exc, extra={"extra_data": {"path": request.url.path}})
    return JSONResponse(status_code=500, content=_error_body("Server error", "internal_error"))


def _request_context(request: Request) -> dict[str, str | None]:
    return {
        "method": request.method,
        "path": request.url.path,
        "request_id": getattr(request.state, "request_id", None),
        "client_ip": request.client.host if request.client else None,
        "user_agent": request.headers.get("user-agent"),
    }


async def _write_admin_audit_log(
    session: AsyncSession,
    request: Request,
    actor_user_id: int | None,
    action: str,
    resource_type: str,
    resource_id: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> None:
    ctx = _request_context(request)
    session.add(
        AdminAuditLog(
            actor_user_id=actor_user_id,
            action=action,
            resource_type=resource_type,
            resource_id=resource_id,
            method=ctx["method"] or "UNKNOWN",
            path=ctx["path"] or "",
            request_id=ctx["request_id"],
            client_ip=ctx["client_ip"],
            user_agent=ctx["user_agent"],
            metadata_json=metadata,
        )
    )


@app.middleware("http")
async def add_request_id_and_logging(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID") or uuid4().hex
    request.state.request_id = request_id
    started_at = time.monotonic()
    response = None

    try:
        response = await call_next(request)
        return response
    finally:
        duration_ms = int((time.monotonic() - started_at) * 1000)
        if response is not None:
            response.headers["X-Request-ID"] = request_id
            status_code = response.status_code
        else:
            status_code = 500
        log_event(
            logger,
            "request.completed",
            request_id=request_id,
            method=request.method,
            path=request.url.path,
            status_code=status_code,
            duration_ms=duration_ms,
            client=(request.client.host if request.client else "unknown"),
        )


def _normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def _parse_constraints(raw: Any) -> Any:
    if raw is None or not isinstance(raw, str):
        return raw
    try:
        return json.loads(raw)
    except ValueError:
        return {"text": raw}


def _to_user_summary(user: User) -> UserSummary:
    return UserSummary(id=user.id, name=user.name, email=user.email, role=user.role)


def _to_problem_response(problem: Problem, *, include_reference: bool = False) -> ProblemResponse:
    return ProblemResponse(
        id=problem.id,
        title=problem.title,
        statement=problem.statement,
        constraints=problem.constraints,
        reference_language=problem.reference_language,
        reference_solution=problem.reference_solution if include_reference else None,
        time_limit_minutes=problem.time_limit_minutes,
        created_by=problem.created_by,
        created_at=problem.created_at,
    )


def _to_testcase_response(testcase: Testcase) -> TestcaseResponse:
    return TestcaseResponse(
        id=testcase.id,
        problem_id=testcase.problem_id,
        input=testcase.input,
        output=testcase.output,
        is_hidden=testcase.is_hidden,
        category=testcase.category,
        generated_by=testcase.generated_by,
        created_at=testcase.created_at,
    )


def _to_evaluation(submission: Submission) -> EvaluationResponse:
    return EvaluationResponse(
        evaluated=bool(submission.evaluated),
        score=submission.evaluation_score if submission.evaluated else None,
        evaluated_by_user_id=submission.evaluated_by_user_id,
        evaluated_at=submission.evaluated_at,
    )


def _to_submission_response(submission: Submission) -> SubmissionResponse:
    return SubmissionResponse(
        id=submission.id,
        candidate_id=submission.candidate_id,
        problem_id=submission.problem_id,
        code=submission.code,
        last_saved_code=submission.last_saved_code,
        language=submission.language,
        submission_status=submission.submission_status,
        status=submission.status,
        passed_count=submission.passed_count,
        total_count=submission.total_count,
        score=submission.score,
        evaluation=_to_evaluation(submission),
        submitted_at=submission.submitted_at,
        created_at=submission.created_at,
        updated_at=submission.updated_at,
    )


async def _submission_detail(session: AsyncSession, submission: Submission, *, hide_hidden: bool) -> SubmissionDetail:
    candidate = await session.scalar(select(User).where(User.id == submission.candidate_id))
    problem = await session.scalar(select(Problem).where(Problem.id == submission.problem_id))
    rows = await session.execute(
        select(SubmissionResult, Testcase)
        .join(Testcase, Testcase.id == SubmissionResult.testcase_id)
        .where(SubmissionResult.submission_id == submission.id)
        .order_by(SubmissionResult.id.asc())
    )

    results = []
    for result, testcase in rows.all():
        # Candidates learn the verdict of hidden cases but never their content.
        shown = not (hide_hidden and testcase.is_hidden)
        results.append(
            SubmissionResultItem(
                id=result.id,
                testcase_id=result.testcase_id,
                actual_output=result.actual_output if shown else "",
                status=result.status,
                created_at=result.created_at,
                testcase=ResultTestcase(
                    id=testcase.id,
                    input=testcase.input,
                    output=testcase.output,
                    category=testcase.category,
                    is_hidden=testcase.is_hidden,
                )
                if shown
                else None,
            )
        )

    base = _to_submission_response(submission)
    return SubmissionDetail(
        **base.model_dump(),
        candidate=_to_user_summary(candidate) if candidate else None,
        problem=ProblemRef(id=problem.id, title=problem.title) if problem else None,
        results=results,
    )


async def _get_problem_or_404(session: AsyncSession, problem_id: int) -> Problem:
    problem = await session.scalar(select(Problem).where(Problem.id == problem_id))
    if problem is None:
        raise NotFound("Problem not found")
    return problem


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/health/db")
async def health_db() -> JSONResponse:
    ok = await check_db_connection()
    if ok:
        return JSONResponse(content={"db": "ok"}, status_code=status.HTTP_200_OK)
    return JSONResponse(content={"db": "error"}, status_code=status.HTTP_503_SERVICE_UNAVAILABLE)


@app.get("/health/redis")
def health_redis() -> JSONResponse:
    ok = check_redis_connection()
    if ok:
        return JSONResponse(content={"redis": "ok"}, status_code=status.HTTP_200_OK)
    return JSONResponse(content={"redis": "error"}, status_code=status.HTTP_503_SERVICE_UNAVAILABLE)


@app.post("/auth/register", response_model=AuthTokenResponse, status_code=status.HTTP_201_CREATED)
async def register(
    payload: RegisterRequest,
    session: Annotated[AsyncSession, Depends(get_async_session)],
) -> AuthTokenResponse:
    name = payload.name.strip()
    email = _normalize_email(payload.email)
    if not name or not email or not payload.password:
        raise ValidationError("Missing fields")
    if len(payload.password) < 8:
        raise ValidationError("Password must be at least 8 characters")

    existing = await session.scalar(select(User).where(User.email == email))
    if existing is not None:
        raise ConflictError("Email already in use")

    user = User(name=name, email=email, password_hash=hash_password(payload.password), role=UserRole.CANDIDATE.value)
    session.add(user)
    await session.commit()
    await session.refresh(user)
    token = create_access_token(subject=user.email, role=user.role, expires_delta=access_token_ttl())
    return AuthTokenResponse(token=token, user=_to_user_summary(user))


@app.post("/auth/login", response_model=AuthTokenResponse)
async def login(
    payload: LoginRequest,
    request: Request,
    session: Annotated[AsyncSession, Depends(get_async_session)],
) -> AuthTokenResponse:
    email = _normalize_email(payload.email)
    if not email or not payload.password:
        raise ValidationError("Email and password required")
    client_host = request.client.host if request.client else "unknown"
    client_key = f"{client_host}:{email}"
    if is_login_rate_limited(client_key):
        raise TooManyRequests("Too many login attempts. Try again later.")

    user = await session.scalar(select(User).where(User.email == email))
    if user is None or not verify_password(payload.password, user.password_hash):
        raise AuthError("Invalid credentials")

    reset_login_attempts(client_key)
    token = create_access_token(subject=user.email, role=user.role, expires_delta=access_token_ttl())
    log_event(logger, "auth.login", user_id=user.id, role=user.role)
    return AuthTokenResponse(token=token, user=_to_user_summary(user))


@app.get("/auth/me", response_model=UserSummary)
async def me(user: Annotated[User, Depends(get_current_user)]) -> UserSummary:
    return _to_user_summary(user)


@app.get("/auth/users", response_model=list[UserSummary])
async def list_users(
    manager: Annotated[User, Depends(require_manager)],
    session: Annotated[AsyncSession, Depends(get_async_session)],
) -> list[UserSummary]:
    query = select(User).order_by(User.id.asc())
    if manager.role == UserRole.RECRUITER.value:
        query = query.where(User.role == UserRole.CANDIDATE.value)
    rows = await session.execute(query)
    return [_to_user_summary(user) for user in rows.scalars().all()]


@app.post("/auth/users", response_model=UserSummary, status_code=status.HTTP_201_CREATED)
async def create_user(
    payload: UserCreate,
    request: Request,
    manager: Annotated[User, Depends(require_manager)],
    session: Annotated[AsyncSession, Depends(get_async_session)],
) -> UserSummary:
    role = (payload.role or "").strip().lower()
    if manager.role == UserRole.RECRUITER.value:
        if role and role != UserRole.CANDIDATE.value:
            raise ForbiddenError("Recruiters can only create users with the role 'candidate'.")
        role = UserRole.CANDIDATE.value

    name = payload.name.strip()
    email = _normalize_email(payload.email)
    if not name or not email or not payload.password or not role:
        raise ValidationError("Missing fields")
    if role not in _ROLES:
        raise ValidationError("Role must be one of: admin, recruiter, candidate")

    existing = await session.scalar(select(User).where(User.email == email))
    if existing is not None:
        raise ConflictError("Email already in use")

    user = User(name=name, email=email, password_hash=hash_password(payload.password), role=role)
    session.add(user)
    await session.flush()
    await _write_admin_audit_log(
        session=session,
        request=request,
        actor_user_id=manager.id,
        action="user.create",
        resource_type="user",
        resource_id=str(user.id),
        metadata={"email": email, "role": role},
    )
    await session.commit()
    await session.refresh(user)
    return _to_user_summary(user)


@app.put("/auth/users/{user_id}", response_model=UserSummary)
async def update_user(
    user_id: int,
    payload: UserUpdate,
    request: Request,
    manager: Annotated[User, Depends(require_manager)],
    session: Annotated[AsyncSession, Depends(get_async_session)],
) -> UserSummary:
    target = await session.scalar(select(User).where(User.id == user_id))
    if target is None:
        raise NotFound("User not found")

    role = payload.role.strip().lower() if payload.role is not None else None
    if manager.role == UserRole.RECRUITER.value:
        if target.role != UserRole.CANDIDATE.value:
            raise ForbiddenError("Recruiters can only update users with the role 'candidate'.")
        if role and role != UserRole.CANDIDATE.value:
            raise ForbiddenError("Recruiters cannot change a candidate's role to a non-candidate role.")
    if role is not None and role not in _ROLES:
        raise ValidationError("Role must be one of: admin, recruiter, candidate")

    if payload.email is not None:
        email = _normalize_email(payload.email)
        if email != target.email:
            clash = await session.scalar(select(User).where(User.email == email))
            if clash is not None:
                raise ConflictError("Email already in use")
        target.email = email
    if payload.name is not None:
        target.name = payload.name.strip()
    if role is not None:
        target.role = role
    if payload.password:
        target.password_hash = hash_password(payload.password)

    await _write_admin_audit_log(
        session=session,
        request=request,
        actor_user_id=manager.id,
        action="user.update",
        resource_type="user",
        resource_id=str(user_id),
        metadata={"role": target.role, "password_changed": bool(payload.password)},
    )
    await session.commit()
    await session.refresh(target)
    return _to_user_summary(target)


@app.delete("/auth/users/{user_id}")
async def delete_user(
    user_id: int,
    request: Request,
    manager: Annotated[User, Depends(require_manager)],
    session: Annotated[AsyncSession, Depends(get_async_session)],
) -> dict[str, bool]:
    target = await session.scalar(select(User).where(User.id == user_id))
    if target is None:
        raise NotFound("User not found")
    if manager.role == UserRole.RECRUITER.value and target.role != UserRole.CANDIDATE.value:
        raise ForbiddenError("Recruiters can only delete users with the role 'candidate'.")

    await session.delete(target)
    await _write_admin_audit_log(
        session=session,
        request=request,
        actor_user_id=manager.id,
        action="user.delete",
        resource_type="user",
        resource_id=str(user_id),
        metadata={"email": target.email, "role": target.role},
    )
    try:
        await session.commit()
    except IntegrityError as exc:
        await session.rollback()
        raise ConflictError("User still owns problems, assignments or submissions") from exc
    return {"ok": True}


@app.get("/problems", response_model=list[ProblemListItem])
async def list_problems(
    user: Annotated[User, Depends(get_current_user)],
    session: Annotated[AsyncSession, Depends(get_async_session)],
) -> list[ProblemListItem]:
    rows = await session.execute(select(Problem).order_by(Problem.created_at.desc(), Problem.id.desc()))
    problems = rows.scalars().all()

    assigned_rows = await session.execute(select(Assignment.problem_id).where(Assignment.user_id == user.id))
    assigned_ids = set(assigned_rows.scalars().all())

    count_rows = await session.execute(
        select(Testcase.problem_id, func.count(Testcase.id))
        .where(Testcase.generated_by == TestcaseOrigin.AI.value)
        .group_by(Testcase.problem_id)
    )
    ai_counts = {problem_id: int(count) for problem_id, count in count_rows.all()}

    if user.role == UserRole.CANDIDATE.value:
        problems = [problem for problem in problems if problem.id in assigned_ids]

    return [
        ProblemListItem(
            id=problem.id,
            title=problem.title,
            reference_language=problem.reference_language,
            time_limit_minutes=problem.time_limit_minutes,
            assigned=problem.id in assigned_ids,
            ai_generated_testcases_count=ai_counts.get(problem.id, 0),
            created_at=problem.created_at,
        )
        for problem in problems
    ]


@app.get("/problems/assigned", response_model=list[AssignedProblemItem])
async def list_assigned_problems(
    candidate: Annotated[User, Depends(require_candidate)],
    session: Annotated[AsyncSession, Depends(get_async_session)],
) -> list[AssignedProblemItem]:
    rows = await session.execute(
        select(Assignment, Problem)
        .join(Problem, Problem.id == Assignment.problem_id)
        .where(Assignment.user_id == candidate.id)
        .order_by(Assignment.assigned_at.desc())
    )
    assigned = rows.all()

    submission_rows = await session.execute(
        select(Submission).where(Submission.candidate_id == candidate.id).order_by(Submission.id.asc())
    )
    latest_submitted: dict[int, Submission] = {}
    drafts: dict[int, Submission] = {}
    for submission in submission_rows.scalars().all():
        if submission.submission_status == SubmissionState.SUBMITTED.value:
            latest_submitted[submission.problem_id] = submission
        else:
            drafts[submission.problem_id] = submission

    items = []
    for assignment, problem in assigned:
        submitted = latest_submitted.get(problem.id)
        draft = drafts.get(problem.id)
        items.append(
            AssignedProblemItem(
                id=problem.id,
                title=problem.title,
                statement=problem.statement,
                constraints=problem.constraints,
                time_limit_minutes=problem.time_limit_minutes,
                submitted=submitted is not None,
                latest_submission_score=submitted.score if submitted else None,
                latest_submission_id=submitted.id if submitted else None,
                draft_submission_id=draft.id if draft else None,
                assigned_at=assignment.assigned_at,
            )
        )
    return items


@app.post("/problems", response_model=ProblemResponse, status_code=status.HTTP_201_CREATED)
async def create_problem(
    payload: ProblemCreate,
    request: Request,
    manager: Annotated[User, Depends(require_manager)],
    session: Annotated[AsyncSession, Depends(get_async_session)],
) -> ProblemResponse:
    title = payload.title.strip()
    if not title or not payload.statement.strip() or not payload.reference_solution.strip():
        raise ValidationError("Missing required fields")
    language = payload.reference_language.strip().lower()
    if not is_supported_language(language):
        raise ValidationError("Unsupported reference_language")

    existing = await session.scalar(select(Problem).where(Problem.title == title))
    if existing is not None:
        raise ConflictError("A problem with this title already exists.")

    problem = Problem(
        title=title,
        statement=payload.statement,
        constraints=_parse_constraints(payload.constraints),
        reference_solution=payload.reference_solution,
        reference_language=language,
        time_limit_minutes=payload.time_limit_minutes,
        created_by=manager.id,
    )
    session.add(problem)
    await session.flush()
    await _write_admin_audit_log(
        session=session,
        request=request,
        actor_user_id=manager.id,
        action="problem.create",
        resource_type="problem",
        resource_id=str(problem.id),
        metadata={"title": title},
    )
    await session.commit()
    await session.refresh(problem)
    return _to_problem_response(problem, include_reference=True)


@app.get("/problems/{problem_id}", response_model=ProblemDetail)
async def get_problem(
    problem_id: int,
    user: Annotated[User, Depends(get_current_user)],
    session: Annotated[AsyncSession, Depends(get_async_session)],
) -> ProblemDetail:
    problem = await _get_problem_or_404(session, problem_id)
    is_candidate = user.role == UserRole.CANDIDATE.value
    if is_candidate:
        assignment = await session.scalar(
            select(Assignment).where(Assignment.problem_id == problem_id, Assignment.user_id == user.id)
        )
        if assignment is None:
            raise NotFound("Problem not found")

    rows = await session.execute(
        select(Testcase)
        .where(Testcase.problem_id == problem_id, Testcase.is_hidden.is_(False))
        .order_by(Testcase.id.asc())
    )
    visible = rows.scalars().all()
    ai_count = await session.scalar(
        select(func.count(Testcase.id)).where(
            Testcase.problem_id == problem_id, Testcase.generated_by == TestcaseOrigin.AI.value
        )
    )
    return ProblemDetail(
        problem=_to_problem_response(problem, include_reference=not is_candidate),
        ai_generated_testcases_count=int(ai_count or 0),
        visible_testcases=[VisibleTestcase(id=t.id, input=t.input, output=t.output) for t in visible],
    )


@app.put("/problems/{problem_id}", response_model=ProblemResponse)
async def update_problem(
    problem_id: int,
    payload: ProblemUpdate,
    request: Request,
    manager: Annotated[User, Depends(require_manager)],
    session: Annotated[AsyncSession, Depends(get_async_session)],
) -> ProblemResponse:
    problem = await _get_problem_or_404(session, problem_id)

    if payload.title is not None:
        title = payload.title.strip()
        if not title:
            raise ValidationError("Title cannot be empty")
        if title != problem.title:
            clash = await session.scalar(select(Problem).where(Problem.title == title, Problem.id != problem_id))
            if clash is not None:
                raise ConflictError("A problem with this title already exists.")
        problem.title = title
    if payload.reference_language is not None:
        language = payload.reference_language.strip().lower()
        if not is_supported_language(language):
            raise ValidationError("Unsupported reference_language")
        problem.reference_language = language
    if payload.statement is not None:
        problem.statement = payload.statement
    if payload.constraints is not None:
        problem.constraints = _parse_constraints(payload.constraints)
    if payload.reference_solution is not None:
        problem.reference_solution = payload.reference_solution
    if payload.time_limit_minutes is not None:
        problem.time_limit_minutes = payload.time_limit_minutes

    await _write_admin_audit_log(
        session=session,
        request=request,
        actor_user_id=manager.id,
        action="problem.update",
        resource_type="problem",
        resource_id=str(problem_id),
        metadata={"fields": sorted(payload.model_dump(exclude_none=True).keys())},
    )
    await session.commit()
    await session.refresh(problem)
    return _to_problem_response(problem, include_reference=True)


@app.delete("/problems/{problem_id}", status_code=status.HTTP_204_NO_CONTENT, response_class=Response)
async def delete_problem(
    problem_id: int,
    request: Request,
    manager: Annotated[User, Depends(require_manager)],
    session: Annotated[AsyncSession, Depends(get_async_session)],
) -> Response:
    problem = await _get_problem_or_404(session, problem_id)

    submission_ids = select(Submission.id).where(Submission.problem_id == problem_id)
    testcase_ids = select(Testcase.id).where(Testcase.problem_id == problem_id)
    # Children first so the whole tree disappears in one transaction.
    for statement in (
        delete(SubmissionResult).where(
            or_(SubmissionResult.submission_id.in_(submission_ids), SubmissionResult.testcase_id.in_(testcase_ids))
        ),
        delete(Submission).where(Submission.problem_id == problem_id),
        delete(Testcase).where(Testcase.problem_id == problem_id),
        delete(Assignment).where(Assignment.problem_id == problem_id),
        delete(Problem).where(Problem.id == problem_id),
    ):
        await session.execute(statement.execution_options(synchronize_session=False))

    await _write_admin_audit_log(
        session=session,
        request=request,
        actor_user_id=manager.id,
        action="problem.delete",
        resource_type="problem",
        resource_id=str(problem_id),
        metadata={"title": problem.title},
    )
    await session.commit()
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@app.get("/problems/{problem_id}/all-testcases", response_model=list[TestcaseResponse])
async def list_all_testcases(
    problem_id: int,
    _: Annotated[User, Depends(require_manager)],
    session: Annotated[AsyncSession, Depends(get_async_session)],
) -> list[TestcaseResponse]:
    await _get_problem_or_404(session, problem_id)
    testcases = await list_authoring_testcases(session, problem_id)
    return [_to_testcase_response(testcase) for testcase in testcases]


@app.post("/problems/{problem_id}/testcases", response_model=TestcaseResponse, status_code=status.HTTP_201_CREATED)
async def add_testcase(
    problem_id: int,
    payload: TestcaseCreate,
    request: Request,
    manager: Annotated[User, Depends(require_manager)],
    session: Annotated[AsyncSession, Depends(get_async_session)],
) -> TestcaseResponse:
    testcase = await create_testcase(
        session,
        problem_id,
        input_text=payload.input,
        output_text=payload.output,
        is_hidden=payload.is_hidden,
        category=payload.category,
    )
    await _write_admin_audit_log(
        session=session,
        request=request,
        actor_user_id=manager.id,
        action="testcase.create",
        resource_type="testcase",
        resource_id=str(testcase.id),
        metadata={"problem_id": problem_id, "is_hidden": payload.is_hidden},
    )
    await session.commit()
    await session.refresh(testcase)
    return _to_testcase_response(testcase)


@app.put("/problems/testcases/{testcase_id}", response_model=TestcaseResponse)
async def edit_testcase(
    testcase_id: int,
    payload: TestcaseUpdate,
    request: Request,
    manager: Annotated[User, Depends(require_manager)],
    session: Annotated[AsyncSession, Depends(get_async_session)],
) -> TestcaseResponse:
    testcase = await update_testcase(
        session,
        testcase_id,
        input_text=payload.input,
        output_text=payload.output,
        is_hidden=payload.is_hidden,
        category=payload.category,
    )
    await _write_admin_audit_log(
        session=session,
        request=request,
        actor_user_id=manager.id,
        action="testcase.update",
        resource_type="testcase",
        resource_id=str(testcase_id),
        metadata={"problem_id": testcase.problem_id},
    )
    await session.commit()
    await session.refresh(testcase)
    return _to_testcase_response(testcase)


@app.delete("/problems/testcases/{testcase_id}", status_code=status.HTTP_204_NO_CONTENT, response_class=Response)
async def remove_testcase(
    testcase_id: int,
    request: Request,
    manager: Annotated[User, Depends(require_manager)],
    session: Annotated[AsyncSession, Depends(get_async_session)],
) -> Response:
    testcase = await delete_testcase(session, testcase_id)
    await _write_admin_audit_log(
        session=session,
        request=request,
        actor_user_id=manager.id,
        action="testcase.delete",
        resource_type="testcase",
        resource_id=str(testcase_id),
        metadata={"problem_id": testcase.problem_id},
    )
    await session.commit()
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@app.post("/problems/{problem_id}/generate-testcases", response_model=GenerateTestcasesResponse)
async def generate_problem_testcases(
    problem_id: int,
    request: Request,
    manager: Annotated[User, Depends(require_manager)],
    session: Annotated[AsyncSession, Depends(get_async_session)],
    client: Annotated[ExecutionClient, Depends(get_execution_client)],
    generator: Annotated[TestcaseGenerator, Depends(get_testcase_generator)],
    payload: Annotated[GenerateTestcasesRequest | None, Body()] = None,
) -> GenerateTestcasesResponse:
    counts_request = payload or GenerateTestcasesRequest()
    counts = await generate_testcases(
        session,
        client,
        generator,
        problem_id,
        normal_count=counts_request.normal_count,
        edge_count=counts_request.edge_count,
        random_count=counts_request.random_count,
    )
    await _write_admin_audit_log(
        session=session,
        request=request,
        actor_user_id=manager.id,
        action="testcase.generate",
        resource_type="problem",
        resource_id=str(problem_id),
        metadata=counts,
    )
    await session.commit()
    return GenerateTestcasesResponse(counts={"visible": counts["visible"], "hidden": counts["hidden"]})


@app.post("/problems/{problem_id}/assign", response_model=AssignResponse)
async def assign_problem(
    problem_id: int,
    payload: AssignRequest,
    request: Request,
    manager: Annotated[User, Depends(require_manager)],
    session: Annotated[AsyncSession, Depends(get_async_session)],
) -> AssignResponse:
    await _get_problem_or_404(session, problem_id)
    user_ids = sorted(set(payload.user_ids))

    if user_ids:
        found_rows = await session.execute(
            select(User.id).where(User.id.in_(user_ids), User.role == UserRole.CANDIDATE.value)
        )
        found = set(found_rows.scalars().all())
        missing = [user_id for user_id in user_ids if user_id not in found]
        if missing:
            raise ValidationError(f"Unknown candidate ids: {missing}")

        existing_rows = await session.execute(
            select(Assignment.user_id).where(Assignment.problem_id == problem_id, Assignment.user_id.in_(user_ids))
        )
        already = set(existing_rows.scalars().all())
        for user_id in user_ids:
            if user_id not in already:
                session.add(Assignment(problem_id=problem_id, user_id=user_id))

    await _write_admin_audit_log(
        session=session,
        request=request,
        actor_user_id=manager.id,
        action="assignment.create",
        resource_type="problem",
        resource_id=str(problem_id),
        metadata={"user_ids": user_ids},
    )
    await session.commit()
    return AssignResponse(assigned=len(user_ids))


@app.get("/problems/{problem_id}/assigned-users", response_model=list[UserSummary])
async def list_assigned_users(
    problem_id: int,
    _: Annotated[User, Depends(require_manager)],
    session: Annotated[AsyncSession, Depends(get_async_session)],
) -> list[UserSummary]:
    rows = await session.execute(
        select(User)
        .join(Assignment, Assignment.user_id == User.id)
        .where(Assignment.problem_id == problem_id)
        .order_by(Assignment.assigned_at.asc())
    )
    return [_to_user_summary(user) for user in rows.scalars().all()]


@app.delete("/problems/{problem_id}/assign/{user_id}")
async def unassign_problem(
    problem_id: int,
    user_id: int,
    request: Request,
    manager: Annotated[User, Depends(require_manager)],
    session: Annotated[AsyncSession, Depends(get_async_session)],
) -> dict[str, bool]:
    assignment = await session.scalar(
        select(Assignment).where(Assignment.problem_id == problem_id, Assignment.user_id == user_id)
    )
    if assignment is None:
        raise NotFound("Assignment not found")

    await session.delete(assignment)
    await _write_admin_audit_log(
        session=session,
        request=request,
        actor_user_id=manager.id,
        action="assignment.delete",
        resource_type="problem",
        resource_id=str(problem_id),
        metadata={"user_id": user_id},
    )
    await session.commit()
    return {"ok": True}


@app.get("/problems/{problem_id}/submissions", response_model=list[SubmissionDetail])
async def list_problem_submissions(
    problem_id: int,
    _: Annotated[User, Depends(require_manager)],
    session: Annotated[AsyncSession, Depends(get_async_session)],
) -> list[SubmissionDetail]:
    rows = await session.execute(
        select(Submission, User)
        .join(User, User.id == Submission.candidate_id)
        .where(Submission.problem_id == problem_id)
        .order_by(Submission.created_at.desc(), Submission.id.desc())
    )
    return [
        SubmissionDetail(**_to_submission_response(submission).model_dump(), candidate=_to_user_summary(candidate))
        for submission, candidate in rows.all()
    ]


@app.post("/submissions/draft", response_model=SubmissionResponse)
async def save_submission_draft(
    payload: DraftSaveRequest,
    candidate: Annotated[User, Depends(require_candidate)],
    session: Annotated[AsyncSession, Depends(get_async_session)],
) -> SubmissionResponse:
    submission = await save_draft(session, candidate, payload.problem_id, payload.code, payload.language)
    return _to_submission_response(submission)


@app.get("/submissions/{submission_id}", response_model=SubmissionDetail)
async def get_submission(
    submission_id: int,
    user: Annotated[User, Depends(get_current_user)],
    session: Annotated[AsyncSession, Depends(get_async_session)],
) -> SubmissionDetail:
    submission = await get_submission_for_viewer(session, user, submission_id)
    return await _submission_detail(session, submission, hide_hidden=user.role == UserRole.CANDIDATE.value)


@app.post("/submissions/{submission_id}/run", response_model=RunResponse)
async def run_submission_code(
    submission_id: int,
    candidate: Annotated[User, Depends(require_candidate)],
    session: Annotated[AsyncSession, Depends(get_async_session)],
    client: Annotated[ExecutionClient, Depends(get_execution_client)],
    payload: Annotated[RunRequest | None, Body()] = None,
) -> RunResponse:
    body = payload or RunRequest()
    outcomes = await run_submission(
        session,
        client,
        candidate,
        submission_id,
        code=body.code,
        language=body.language,
    )
    return RunResponse(
        submission_id=submission_id,
        submission_status=SubmissionState.DRAFT.value,
        results=[
            RunResultItem(
                testcase_id=outcome.testcase_id,
                expected=outcome.expected,
                stdout=outcome.actual_output,
                stderr=outcome.stderr,
                status=outcome.status,
                error=outcome.error,
            )
            for outcome in outcomes
        ],
    )


@app.post("/submissions/{submission_id}/submit", response_model=SubmitResponse)
async def submit_submission_code(
    submission_id: int,
    candidate: Annotated[User, Depends(require_candidate)],
    session: Annotated[AsyncSession, Depends(get_async_session)],
    client: Annotated[ExecutionClient, Depends(get_execution_client)],
) -> SubmitResponse:
    submission, summary, _ = await submit_submission(session, client, candidate, submission_id)
    return SubmitResponse(
        submission=_to_submission_response(submission),
        passed_count=summary.passed,
        total_count=summary.total,
        status=summary.status,
        score=summary.score,
    )


@app.put("/submissions/{submission_id}/evaluate", response_model=SubmissionResponse)
async def evaluate_submission(
    submission_id: int,
    payload: EvaluationRequest,
    request: Request,
    manager: Annotated[User, Depends(require_manager)],
    session: Annotated[AsyncSession, Depends(get_async_session)],
) -> SubmissionResponse:
    submission = await set_evaluation(session, manager, submission_id, payload.score)
    await _write_admin_audit_log(
        session=session,
        request=request,
        actor_user_id=manager.id,
        action="submission.evaluate",
        resource_type="submission",
        resource_id=str(submission_id),
        metadata={"score": submission.evaluation_score},
    )
    await session.commit()
    await session.refresh(submission)
    return _to_submission_response(submission)


@app.get("/admin/stats", response_model=AdminStatsResponse)
async def admin_stats(
    _: Annotated[User, Depends(require_manager)],
    session: Annotated[AsyncSession, Depends(get_async_session)],
) -> AdminStatsResponse:
    problems_count = await session.scalar(select(func.count(Problem.id)))
    candidates_count = await session.scalar(
        select(func.count(User.id)).where(User.role == UserRole.CANDIDATE.value)
    )
    assignments_count = await session.scalar(select(func.count(Assignment.id)))
    submissions_count = await session.scalar(select(func.count(Submission.id)))
    submitted_count = await session.scalar(
        select(func.count(Submission.id)).where(Submission.submission_status == SubmissionState.SUBMITTED.value)
    )
    passed_count = await session.scalar(
        select(func.count(Submission.id)).where(Submission.status == GradeStatus.PASSED.value)
    )
    return AdminStatsResponse(
        problems_count=int(problems_count or 0),
        candidates_count=int(candidates_count or 0),
        assignments_count=int(assignments_count or 0),
        submissions_count=int(submissions_count or 0),
        pass_rate=percentage(int(passed_count or 0), int(submitted_count or 0)),
    )


@app.get("/admin/recent-submissions", response_model=list[RecentSubmissionItem])
async def admin_recent_submissions(
    _: Annotated[User, Depends(require_manager)],
    session: Annotated[AsyncSession, Depends(get_async_session)],
    limit: Annotated[int, Query(ge=1, le=100)] = 10,
) -> list[RecentSubmissionItem]:
    rows = await session.execute(
        select(Submission, User, Problem)
        .join(User, User.id == Submission.candidate_id)
        .join(Problem, Problem.id == Submission.problem_id)
        .order_by(Submission.created_at.desc(), Submission.id.desc())
        .limit(limit)
    )
    return [
        RecentSubmissionItem(
            id=submission.id,
            score=submission.score,
            status=submission.status,
            submission_status=submission.submission_status,
            created_at=submission.created_at,
            candidate=_to_user_summary(candidate),
            problem=ProblemRef(id=problem.id, title=problem.title),
        )
        for submission, candidate, problem in rows.all()
    ]


@app.get("/admin/users", response_model=list[UserSummary])
async def admin_list_users(
    _: Annotated[User, Depends(require_manager)],
    session: Annotated[AsyncSession, Depends(get_async_session)],
) -> list[UserSummary]:
    rows = await session.execute(select(User).order_by(User.id.asc()))
    return [_to_user_summary(user) for user in rows.scalars().all()]


@app.get("/admin/users/{user_id}/submissions", response_model=list[SubmissionDetail])
async def admin_user_submissions(
    user_id: int,
    _: Annotated[User, Depends(require_manager)],
    session: Annotated[AsyncSession, Depends(get_async_session)],
) -> list[SubmissionDetail]:
    rows = await session.execute(
        select(Submission, Problem)
        .join(Problem, Problem.id == Submission.problem_id)
        .where(Submission.candidate_id == user_id)
        .order_by(Submission.created_at.desc(), Submission.id.desc())
    )
    return [
        SubmissionDetail(
            **_to_submission_response(submission).model_dump(),
            problem=ProblemRef(id=problem.id, title=problem.title),
        )
        for submission, problem in rows.all()
    ]


@app.get("/admin/submissions/{submission_id}", response_model=SubmissionDetail)
async def admin_submission_detail(
    submission_id: int,
    manager: Annotated[User, Depends(require_manager)],
    session: Annotated[AsyncSession, Depends(get_async_session)],
) -> SubmissionDetail:
    submission = await get_submission_for_viewer(session, manager, submission_id)
    return await _submission_detail(session, submission, hide_hidden=False)


@app.get("/admin/audit-logs", response_model=list[AdminAuditLogResponse])
async def admin_list_audit_logs(
    _: Annotated[User, Depends(require_manager)],
    session: Annotated[AsyncSession, Depends(get_async_session)],
    limit: Annotated[int, Query(ge=1, le=200)] = 50,
) -> list[AdminAuditLogResponse]:
    rows = await session.execute(select(AdminAuditLog).order_by(AdminAuditLog.id.desc()).limit(limit))
    logs = rows.scalars().all()
    return [
        AdminAuditLogResponse(
            id=log.id,
            actor_user_id=log.actor_user_id,
            action=log.action,
            resource_type=log.resource_type,
            resource_id=log.resource_id,
            method=log.method,
            path=log.path,
            request_id=log.request_id,
            client_ip=log.client_ip,
            user_agent=log.user_agent,
            metadata_json=log.metadata_json,
            created_at=log.created_at,
        )
        for log in logs
    ]
