from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

# Judge0 status ids: 1 In Queue, 2 Processing, 3 Accepted, >3 finished with an error verdict.
STATUS_ACCEPTED = 3
TERMINAL_STATUS_MIN = 3

LANGUAGE_IDS: dict[str, int] = {
    "python": 71,
    "javascript": 63,
    "java": 62,
    "cpp": 54,
}


class ExecutionError(Exception):
    pass


class UnsupportedLanguage(ExecutionError):
    def __init__(self, language: str) -> None:
        super().__init__(f"Unsupported language: {language}")
        self.language = language


class SubmissionRejected(ExecutionError):
    pass


class ExecutionTimeout(ExecutionError):
    def __init__(self, token: str, waited_seconds: float) -> None:
        super().__init__(f"Execution {token} did not finish within {waited_seconds:.1f}s")
        self.token = token
        self.waited_seconds = waited_seconds


class TransportError(ExecutionError):
    def __init__(self, message: str, *, path: str, status_code: int | None = None) -> None:
        detail = f"{message} (path={path}"
        if status_code is not None:
            detail += f", status={status_code}"
        super().__init__(detail + ")")
        self.path = path
        self.status_code = status_code


@dataclass(frozen=True)
class ExecutionResult:
    token: str
    status_id: int
    status_description: str = ""
    stdout: str = ""
    stderr: str = ""
    compile_output: str = ""

    @property
    def accepted(self) -> bool:
        return self.status_id == STATUS_ACCEPTED

    @property
    def clean(self) -> bool:
        """Accepted, silent on stderr and the compiler, and printed something."""
        return self.accepted and not self.stderr and not self.compile_output and bool(self.stdout.strip())


def resolve_language_id(language: str) -> int:
    language_id = LANGUAGE_IDS.get((language or "").strip().lower())
    if language_id is None:
        raise UnsupportedLanguage(language)
    return language_id


def is_supported_language(language: str) -> bool:
    return (language or "").strip().lower() in LANGUAGE_IDS


class ExecutionClient(Protocol):
    async def run(self, language: str, source: str, stdin: str, *, purpose: str = "candidate") -> ExecutionResult:
        ...
