"""Scoring rules for candidate code.

Every testcase is judged by running the candidate program once with the
testcase input and comparing trimmed stdout with the trimmed expected output.
No numeric tolerance and no line reordering is applied. Output kept on an
outcome is clipped for storage, but the comparison always sees the full text.
"""

from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass
from typing import Any, Sequence

from codeassess.config import MAX_OUTPUT_BYTES
from codeassess.errors import UpstreamError, ValidationError
from codeassess.execution import ExecutionClient, ExecutionError, ExecutionResult, UnsupportedLanguage
from codeassess.models import GradeStatus, Testcase
from codeassess.observability import get_logger, log_event

logger = get_logger("codeassess.grading")


@dataclass
class TestcaseOutcome:
    __test__ = False

    testcase_id: int
    expected: str
    actual_output: str
    stderr: str
    status: str
    error: str | None = None

    @property
    def passed(self) -> bool:
        return self.status == GradeStatus.PASSED.value

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class GradeSummary:
    passed: int
    total: int
    status: str
    score: int


def clip_output(text: str, limit: int = MAX_OUTPUT_BYTES) -> str:
    """Bound text kept for storage and display. Never used for comparison."""
    encoded = text.encode("utf-8", errors="replace")
    if len(encoded) <= limit:
        return text
    clipped = encoded[:limit].decode("utf-8", errors="ignore")
    return f"{clipped}\n...<truncated>"


def outputs_match(actual: str | None, expected: str | None) -> bool:
    return (actual or "").strip() == (expected or "").strip()


def classify(passed: int, total: int) -> str:
    if passed == total:
        return GradeStatus.PASSED.value
    if passed > 0:
        return GradeStatus.PARTIALLY_PASSED.value
    return GradeStatus.FAILED.value


def percentage(passed: int, total: int) -> int:
    if total <= 0:
        return 0
    # Round half up: 1 of 8 is 13, not 12.
    return (200 * passed + total) // (2 * total)


def summarize(outcomes: Sequence[TestcaseOutcome]) -> GradeSummary:
    total = len(outcomes)
    passed = sum(1 for outcome in outcomes if outcome.passed)
    status = classify(passed, total) if total else GradeStatus.FAILED.value
    return GradeSummary(passed=passed, total=total, status=status, score=percentage(passed, total))


def judge(testcase: Testcase, result: ExecutionResult) -> TestcaseOutcome:
    actual = (result.stdout or "").strip()
    expected = (testcase.output or "").strip()
    ok = outputs_match(actual, expected)
    return TestcaseOutcome(
        testcase_id=testcase.id,
        expected=clip_output(expected),
        actual_output=clip_output(actual),
        stderr=clip_output(result.stderr or result.compile_output or ""),
        status=GradeStatus.PASSED.value if ok else GradeStatus.FAILED.value,
    )


async def grade_testcases(
    client: ExecutionClient,
    language: str,
    code: str,
    testcases: Sequence[Testcase],
    *,
    max_concurrency: int = 1,
    tolerate_errors: bool = False,
) -> list[TestcaseOutcome]:
    """Run ``code`` against each testcase and return outcomes in testcase order.

    With ``tolerate_errors`` an execution failure becomes a ``Failed`` outcome
    carrying the error text; otherwise the first failure aborts the pass as an
    ``UpstreamError``. An unsupported language is always a ``ValidationError``.
    """
    semaphore = asyncio.Semaphore(max(max_concurrency, 1))

    async def _grade_one(testcase: Testcase) -> TestcaseOutcome:
        async with semaphore:
            try:
                result = await client.run(language, code, testcase.input, purpose="candidate")
            except UnsupportedLanguage as exc:
                raise ValidationError(str(exc)) from exc
            except ExecutionError as exc:
                if not tolerate_errors:
                    raise UpstreamError(f"Code execution failed: {exc}") from exc
                return TestcaseOutcome(
                    testcase_id=testcase.id,
                    expected=clip_output((testcase.output or "").strip()),
                    actual_output="",
                    stderr="",
                    status=GradeStatus.FAILED.value,
                    error=str(exc),
                )
            return judge(testcase, result)

    if max_concurrency <= 1:
        outcomes = [await _grade_one(testcase) for testcase in testcases]
    else:
        try:
            async with asyncio.TaskGroup() as group:
                tasks = [group.create_task(_grade_one(testcase)) for testcase in testcases]
        except ExceptionGroup as failures:
            # Remaining runs were cancelled by the group; surface the first failure.
            raise failures.exceptions[0] from failures
        outcomes = [task.result() for task in tasks]

    log_event(
        logger,
        "grading.completed",
        language=language,
        total=len(outcomes),
        passed=sum(1 for outcome in outcomes if outcome.passed),
        errors=sum(1 for outcome in outcomes if outcome.error),
    )
    return outcomes
