from __future__ import annotations

from enum import StrEnum

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from codeassess.db import Base


class UserRole(StrEnum):
    ADMIN = "admin"
    RECRUITER = "recruiter"
    CANDIDATE = "candidate"


class SubmissionState(StrEnum):
    DRAFT = "draft"
    SUBMITTED = "submitted"


class GradeStatus(StrEnum):
    PASSED = "Passed"
    PARTIALLY_PASSED = "Partially Passed"
    FAILED = "Failed"


class TestcaseCategory(StrEnum):
    __test__ = False

    NORMAL = "normal"
    EDGE = "edge"
    RANDOM = "random"


class TestcaseOrigin(StrEnum):
    __test__ = False

    MANUAL = "manual"
    AI = "ai"


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    email: Mapped[str] = mapped_column(String(255), unique=True, index=True, nullable=False)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[str] = mapped_column(String(20), nullable=False, default=UserRole.CANDIDATE.value)
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    assignments: Mapped[list["Assignment"]] = relationship(back_populates="user", cascade="all, delete-orphan")
    submissions: Mapped[list["Submission"]] = relationship(
        "Submission",
        foreign_keys="Submission.candidate_id",
        back_populates="candidate",
        cascade="all, delete-orphan",
    )


class Problem(Base):
    __tablename__ = "problems"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    title: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    statement: Mapped[str] = mapped_column(Text, nullable=False)
    constraints: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    reference_solution: Mapped[str] = mapped_column(Text, nullable=False)
    reference_language: Mapped[str] = mapped_column(String(30), nullable=False)
    time_limit_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    created_by: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    testcases: Mapped[list["Testcase"]] = relationship(
        back_populates="problem", cascade="all, delete-orphan", order_by="Testcase.id.asc()"
    )
    assignments: Mapped[list["Assignment"]] = relationship(back_populates="problem", cascade="all, delete-orphan")
    submissions: Mapped[list["Submission"]] = relationship(back_populates="problem", cascade="all, delete-orphan")


class Testcase(Base):
    __tablename__ = "testcases"
    __test__ = False

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    problem_id: Mapped[int] = mapped_column(ForeignKey("problems.id", ondelete="CASCADE"), nullable=False, index=True)
    input: Mapped[str] = mapped_column(Text, nullable=False)
    output: Mapped[str] = mapped_column(Text, nullable=False)
    is_hidden: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    category: Mapped[str] = mapped_column(String(20), nullable=False, default=TestcaseCategory.NORMAL.value)
    generated_by: Mapped[str] = mapped_column(String(20), nullable=False, default=TestcaseOrigin.MANUAL.value)
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    problem: Mapped["Problem"] = relationship(back_populates="testcases")
    results: Mapped[list["SubmissionResult"]] = relationship(back_populates="testcase")


class Assignment(Base):
    __tablename__ = "assignments"
    __table_args__ = (UniqueConstraint("problem_id", "user_id", name="uq_assignments_problem_user"),)

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    problem_id: Mapped[int] = mapped_column(ForeignKey("problems.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    assigned_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    problem: Mapped["Problem"] = relationship(back_populates="assignments")
    user: Mapped["User"] = relationship(back_populates="assignments")


class Submission(Base):
    __tablename__ = "submissions"
    __table_args__ = (
        # At most one draft per (candidate, problem); submitted rows are unconstrained.
        Index(
            "uq_submissions_draft_candidate_problem",
            "candidate_id",
            "problem_id",
            unique=True,
            postgresql_where=text("submission_status = 'draft'"),
            sqlite_where=text("submission_status = 'draft'"),
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    candidate_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    problem_id: Mapped[int] = mapped_column(ForeignKey("problems.id", ondelete="CASCADE"), nullable=False, index=True)
    code: Mapped[str] = mapped_column(Text, nullable=False, default="")
    last_saved_code: Mapped[str] = mapped_column(Text, nullable=False)
    language: Mapped[str] = mapped_column(String(30), nullable=False)
    submission_status: Mapped[str] = mapped_column(String(20), nullable=False, default=SubmissionState.DRAFT.value)
    status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    passed_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    total_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    score: Mapped[int | None] = mapped_column(Integer, nullable=True)
    evaluated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    evaluation_score: Mapped[int | None] = mapped_column(Integer, nullable=True)
    evaluated_by_user_id: Mapped[int | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True
    )
    evaluated_at: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    submitted_at: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at: Mapped[DateTime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )

    candidate: Mapped["User"] = relationship(foreign_keys=[candidate_id], back_populates="submissions")
    evaluated_by: Mapped["User | None"] = relationship(foreign_keys=[evaluated_by_user_id])
    problem: Mapped["Problem"] = relationship(back_populates="submissions")
    results: Mapped[list["SubmissionResult"]] = relationship(
        back_populates="submission", cascade="all, delete-orphan", order_by="SubmissionResult.id.asc()"
    )


class SubmissionResult(Base):
    __tablename__ = "submission_results"
    __table_args__ = (
        UniqueConstraint("submission_id", "testcase_id", name="uq_submission_results_submission_testcase"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    submission_id: Mapped[int] = mapped_column(
        ForeignKey("submissions.id", ondelete="CASCADE"), nullable=False, index=True
    )
    testcase_id: Mapped[int] = mapped_column(ForeignKey("testcases.id", ondelete="CASCADE"), nullable=False, index=True)
    actual_output: Mapped[str] = mapped_column(Text, nullable=False, default="")
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    submission: Mapped["Submission"] = relationship(back_populates="results")
    testcase: Mapped["Testcase"] = relationship(back_populates="results")


class AdminAuditLog(Base):
    __tablename__ = "admin_audit_logs"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    actor_user_id: Mapped[int | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True
    )
    action: Mapped[str] = mapped_column(String(100), nullable=False)
    resource_type: Mapped[str] = mapped_column(String(100), nullable=False)
    resource_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    method: Mapped[str] = mapped_column(String(16), nullable=False)
    path: Mapped[str] = mapped_column(String(255), nullable=False)
    request_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    client_ip: Mapped[str | None] = mapped_column(String(100), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(255), nullable=True)
    metadata_json: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
