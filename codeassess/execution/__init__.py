from __future__ import annotations

from codeassess.config import execution_settings
from codeassess.execution.base import (
    LANGUAGE_IDS,
    ExecutionClient,
    ExecutionError,
    ExecutionResult,
    ExecutionTimeout,
    SubmissionRejected,
    TransportError,
    UnsupportedLanguage,
    is_supported_language,
    resolve_language_id,
)
from codeassess.execution.judge0 import Judge0Client

default_execution_client: ExecutionClient = Judge0Client(execution_settings())

__all__ = [
    "LANGUAGE_IDS",
    "ExecutionClient",
    "ExecutionError",
    "ExecutionResult",
    "ExecutionTimeout",
    "Judge0Client",
    "SubmissionRejected",
    "TransportError",
    "UnsupportedLanguage",
    "default_execution_client",
    "is_supported_language",
    "resolve_language_id",
]
