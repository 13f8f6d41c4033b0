from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Sequence

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from codeassess.config import TESTCASE_GENERATION_DELAY_SECONDS, TESTCASE_MAX_VISIBLE
from codeassess.errors import NotFound, TestcaseLocked, ValidationError
from codeassess.execution import ExecutionClient, ExecutionError, is_supported_language
from codeassess.generator import TestcaseGenerator
from codeassess.models import Problem, SubmissionResult, Testcase, TestcaseCategory, TestcaseOrigin
from codeassess.observability import get_logger, log_event, log_warning

logger = get_logger("codeassess.testcases")

CATEGORY_PREFERENCE = (TestcaseCategory.NORMAL.value, TestcaseCategory.EDGE.value, TestcaseCategory.RANDOM.value)


@dataclass
class CandidateTestcase:
    input: str
    output: str
    category: str
    is_hidden: bool = True


async def list_grading_testcases(session: AsyncSession, problem_id: int, *, visible_only: bool = False) -> list[Testcase]:
    query = select(Testcase).where(Testcase.problem_id == problem_id)
    if visible_only:
        query = query.where(Testcase.is_hidden.is_(False))
    rows = await session.execute(query.order_by(Testcase.id.asc()))
    return list(rows.scalars().all())


async def list_authoring_testcases(session: AsyncSession, problem_id: int) -> list[Testcase]:
    rows = await session.execute(
        select(Testcase)
        .where(Testcase.problem_id == problem_id)
        .order_by(Testcase.category.asc(), Testcase.created_at.asc(), Testcase.id.asc())
    )
    return list(rows.scalars().all())


async def count_results(session: AsyncSession, testcase_id: int) -> int:
    count = await session.scalar(
        select(func.count(SubmissionResult.id)).where(SubmissionResult.testcase_id == testcase_id)
    )
    return int(count or 0)


async def get_mutable_testcase(session: AsyncSession, testcase_id: int, *, action: str) -> Testcase:
    testcase = await session.scalar(select(Testcase).where(Testcase.id == testcase_id))
    if testcase is None:
        raise NotFound("Testcase not found")
    if await count_results(session, testcase_id) > 0:
        raise TestcaseLocked(
            f"Cannot {action} this testcase as it has associated submission results. "
            "Create a new testcase instead."
        )
    return testcase


def _validate_category(category: str | None) -> str:
    value = (category or TestcaseCategory.NORMAL.value).strip().lower()
    if value not in CATEGORY_PREFERENCE:
        raise ValidationError("Category must be one of: normal, edge, random")
    return value


async def create_testcase(
    session: AsyncSession,
    problem_id: int,
    *,
    input_text: str,
    output_text: str,
    is_hidden: bool,
    category: str | None,
) -> Testcase:
    problem = await session.scalar(select(Problem).where(Problem.id == problem_id))
    if problem is None:
        raise NotFound("Problem not found")

    testcase = Testcase(
        problem_id=problem_id,
        input=input_text,
        output=output_text,
        is_hidden=is_hidden,
        category=_validate_category(category),
        generated_by=TestcaseOrigin.MANUAL.value,
    )
    session.add(testcase)
    await session.flush()
    return testcase


async def update_testcase(
    session: AsyncSession,
    testcase_id: int,
    *,
    input_text: str | None = None,
    output_text: str | None = None,
    is_hidden: bool | None = None,
    category: str | None = None,
) -> Testcase:
    testcase = await get_mutable_testcase(session, testcase_id, action="edit")
    if input_text is not None:
        testcase.input = input_text
    if output_text is not None:
        testcase.output = output_text
    if is_hidden is not None:
        testcase.is_hidden = is_hidden
    if category is not None:
        testcase.category = _validate_category(category)
    return testcase


async def delete_testcase(session: AsyncSession, testcase_id: int) -> Testcase:
    testcase = await get_mutable_testcase(session, testcase_id, action="delete")
    await session.delete(testcase)
    return testcase


def sanitize_input(raw: object) -> str:
    text = str(raw).strip()
    if text[:1] in {'"', "'"}:
        text = text[1:]
    if text[-1:] in {'"', "'"}:
        text = text[:-1]
    return text


def pick_visible(generated: Sequence[CandidateTestcase], limit: int = TESTCASE_MAX_VISIBLE) -> int:
    """Flip up to ``limit`` testcases to visible, normal first, then edge, then random."""
    shown = 0
    for category in CATEGORY_PREFERENCE:
        for item in generated:
            if shown >= limit:
                return shown
            if item.category == category and item.is_hidden:
                item.is_hidden = False
                shown += 1
    return shown


async def generate_testcases(
    session: AsyncSession,
    client: ExecutionClient,
    generator: TestcaseGenerator,
    problem_id: int,
    *,
    normal_count: int = 3,
    edge_count: int = 2,
    random_count: int = 2,
    delay_seconds: float = TESTCASE_GENERATION_DELAY_SECONDS,
) -> dict[str, int]:
    problem = await session.scalar(select(Problem).where(Problem.id == problem_id))
    if problem is None:
        raise NotFound("Problem not found")

    language = (problem.reference_language or "").lower()
    if not is_supported_language(language):
        raise ValidationError("Unsupported reference_language")

    locked = await session.scalar(
        select(func.count(SubmissionResult.id))
        .join(Testcase, Testcase.id == SubmissionResult.testcase_id)
        .where(Testcase.problem_id == problem_id)
    )
    if int(locked or 0) > 0:
        raise TestcaseLocked("Cannot regenerate testcases for a problem that already has graded submissions")

    inputs = await generator.generate(problem.statement, problem.constraints, normal_count, edge_count, random_count)
    pending = [
        (sanitize_input(raw), category)
        for category, values in inputs.buckets()
        for raw in values
    ]
    pending = [(text, category) for text, category in pending if text]

    generated: list[CandidateTestcase] = []
    discarded = 0
    for index, (stdin, category) in enumerate(pending):
        if index > 0 and delay_seconds > 0:
            await asyncio.sleep(delay_seconds)
        try:
            result = await client.run(language, problem.reference_solution, stdin, purpose="reference")
        except ExecutionError as exc:
            discarded += 1
            log_warning(logger, "testcases.reference_run_failed", problem_id=problem_id, error=str(exc))
            continue
        if not result.clean:
            discarded += 1
            continue
        generated.append(CandidateTestcase(input=stdin, output=result.stdout.strip(), category=category))

    visible = pick_visible(generated)
    if visible == 0:
        raise ValidationError(
            "No visible testcases generated. Ensure you provided at least 1 normal input "
            "and that the reference solution prints output."
        )

    await session.execute(delete(Testcase).where(Testcase.problem_id == problem_id))
    for item in generated:
        session.add(
            Testcase(
                problem_id=problem_id,
                input=item.input,
                output=item.output,
                category=item.category,
                is_hidden=item.is_hidden,
                generated_by=TestcaseOrigin.AI.value,
            )
        )

    counts = {"visible": visible, "hidden": len(generated) - visible, "discarded": discarded}
    log_event(logger, "testcases.generated", problem_id=problem_id, source=inputs.source, **counts)
    return counts
