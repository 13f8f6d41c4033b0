"""Lifecycle of a candidate's attempt at a problem.

A submission starts as a ``draft`` on the first save, stays a draft through any
number of saves and runs, and becomes ``submitted`` exactly once. After that
only the human evaluation fields may change.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from codeassess.config import GRADING_MAX_CONCURRENCY
from codeassess.errors import (
    AlreadySubmitted,
    ConflictError,
    ForbiddenError,
    InternalError,
    InvalidScore,
    NotFound,
    ValidationError,
)
from codeassess.execution import ExecutionClient, is_supported_language
from codeassess.grading import GradeSummary, TestcaseOutcome, grade_testcases, summarize
from codeassess.models import (
    Assignment,
    Submission,
    SubmissionResult,
    SubmissionState,
    User,
    UserRole,
)
from codeassess.observability import get_logger, log_event
from codeassess.testcases import list_grading_testcases

logger = get_logger("codeassess.submissions")


def _validate_draft_fields(problem_id: int | None, code: str | None, language: str | None) -> tuple[int, str, str]:
    if not problem_id or not code or not language:
        raise ValidationError("Missing fields")
    language = language.strip().lower()
    if not is_supported_language(language):
        raise ValidationError(f"Unsupported language: {language}")
    return problem_id, code, language


async def _find_draft(session: AsyncSession, candidate_id: int, problem_id: int) -> Submission | None:
    return await session.scalar(
        select(Submission).where(
            Submission.candidate_id == candidate_id,
            Submission.problem_id == problem_id,
            Submission.submission_status == SubmissionState.DRAFT.value,
        )
    )


async def save_draft(
    session: AsyncSession,
    candidate: User,
    problem_id: int | None,
    code: str | None,
    language: str | None,
) -> Submission:
    problem_id, code, language = _validate_draft_fields(problem_id, code, language)

    assignment = await session.scalar(
        select(Assignment).where(Assignment.problem_id == problem_id, Assignment.user_id == candidate.id)
    )
    if assignment is None:
        raise NotFound("Problem not found")

    existing = await session.scalar(
        select(Submission)
        .where(Submission.candidate_id == candidate.id, Submission.problem_id == problem_id)
        .order_by(Submission.id.desc())
        .limit(1)
    )
    if existing is not None and existing.submission_status == SubmissionState.SUBMITTED.value:
        raise AlreadySubmitted("This problem has already been submitted")
    if existing is not None:
        existing.last_saved_code = code
        existing.language = language
        await session.commit()
        return existing

    draft = Submission(
        candidate_id=candidate.id,
        problem_id=problem_id,
        code=code,
        last_saved_code=code,
        language=language,
        submission_status=SubmissionState.DRAFT.value,
    )
    session.add(draft)
    try:
        await session.commit()
    except IntegrityError:
        # A concurrent save created the draft first; update that row instead.
        await session.rollback()
        existing = await _find_draft(session, candidate.id, problem_id)
        if existing is None:
            raise
        existing.last_saved_code = code
        existing.language = language
        await session.commit()
        return existing

    await session.refresh(draft)
    log_event(logger, "submission.draft_created", submission_id=draft.id, candidate_id=candidate.id, problem_id=problem_id)
    return draft


async def load_owned_submission(session: AsyncSession, candidate: User, submission_id: int) -> Submission:
    submission = await session.scalar(select(Submission).where(Submission.id == submission_id))
    # Someone else's submission is reported as missing so its existence is not confirmed.
    if submission is None or submission.candidate_id != candidate.id:
        raise NotFound("Not found")
    return submission


async def run_submission(
    session: AsyncSession,
    client: ExecutionClient,
    candidate: User,
    submission_id: int,
    *,
    code: str | None = None,
    language: str | None = None,
) -> list[TestcaseOutcome]:
    submission = await load_owned_submission(session, candidate, submission_id)
    if submission.submission_status != SubmissionState.DRAFT.value:
        raise AlreadySubmitted("Submission is locked")

    if code is not None or language is not None:
        _, new_code, new_language = _validate_draft_fields(
            submission.problem_id,
            code if code is not None else submission.last_saved_code,
            language if language is not None else submission.language,
        )
        submission.last_saved_code = new_code
        submission.language = new_language
        await session.commit()

    visible = await list_grading_testcases(session, submission.problem_id, visible_only=True)
    if not visible:
        raise ValidationError("No visible testcases for this problem. Ask the admin to generate testcases.")

    outcomes = await grade_testcases(
        client,
        submission.language,
        submission.last_saved_code,
        visible,
        max_concurrency=GRADING_MAX_CONCURRENCY,
        tolerate_errors=True,
    )
    log_event(
        logger,
        "submission.run",
        submission_id=submission.id,
        total=len(outcomes),
        passed=sum(1 for outcome in outcomes if outcome.passed),
    )
    return outcomes


async def submit_submission(
    session: AsyncSession,
    client: ExecutionClient,
    candidate: User,
    submission_id: int,
) -> tuple[Submission, GradeSummary, list[TestcaseOutcome]]:
    submission = await load_owned_submission(session, candidate, submission_id)
    if submission.submission_status != SubmissionState.DRAFT.value:
        raise AlreadySubmitted()

    testcases = await list_grading_testcases(session, submission.problem_id)
    if not testcases:
        raise ConflictError("This problem has no testcases yet; it cannot be submitted")

    code = submission.last_saved_code
    # Execution failures abort here, before anything is written.
    outcomes = await grade_testcases(
        client,
        submission.language,
        code,
        testcases,
        max_concurrency=GRADING_MAX_CONCURRENCY,
        tolerate_errors=False,
    )
    summary = summarize(outcomes)

    try:
        transition = await session.execute(
            update(Submission)
            .where(
                Submission.id == submission.id,
                Submission.submission_status == SubmissionState.DRAFT.value,
            )
            .values(
                code=code,
                passed_count=summary.passed,
                total_count=summary.total,
                status=summary.status,
                score=summary.score,
                submission_status=SubmissionState.SUBMITTED.value,
                submitted_at=datetime.now(timezone.utc),
            )
            .execution_options(synchronize_session=False)
        )
        if transition.rowcount != 1:
            await session.rollback()
            raise AlreadySubmitted()

        for outcome in outcomes:
            session.add(
                SubmissionResult(
                    submission_id=submission.id,
                    testcase_id=outcome.testcase_id,
                    actual_output=outcome.actual_output,
                    status=outcome.status,
                )
            )
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        logger.exception("submission.submit_failed", extra={"extra_data": {"submission_id": submission.id}})
        raise InternalError("Failed to record submission") from exc

    await session.refresh(submission)
    log_event(
        logger,
        "submission.submitted",
        submission_id=submission.id,
        candidate_id=candidate.id,
        passed=summary.passed,
        total=summary.total,
        score=summary.score,
        status=summary.status,
    )
    return submission, summary, outcomes


async def get_submission_for_viewer(session: AsyncSession, viewer: User, submission_id: int) -> Submission:
    submission = await session.scalar(select(Submission).where(Submission.id == submission_id))
    if submission is None:
        raise NotFound("Submission not found")
    if viewer.role == UserRole.CANDIDATE.value and submission.candidate_id != viewer.id:
        raise ForbiddenError("Forbidden")
    return submission


def parse_evaluation_score(value: Any) -> int:
    if isinstance(value, bool) or value is None:
        raise InvalidScore("Score must be an integer between 0 and 100")
    if isinstance(value, float):
        if not value.is_integer():
            raise InvalidScore("Score must be an integer between 0 and 100")
        value = int(value)
    if not isinstance(value, int) or not 0 <= value <= 100:
        raise InvalidScore("Score must be an integer between 0 and 100")
    return value


async def set_evaluation(session: AsyncSession, reviewer: User, submission_id: int, raw_score: Any) -> Submission:
    score = parse_evaluation_score(raw_score)
    submission = await session.scalar(select(Submission).where(Submission.id == submission_id))
    if submission is None:
        raise NotFound("Submission not found")

    submission.evaluated = True
    submission.evaluation_score = score
    submission.evaluated_by_user_id = reviewer.id
    submission.evaluated_at = datetime.now(timezone.utc)
    return submission
