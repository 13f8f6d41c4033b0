from __future__ import annotations

import asyncio
import time
from typing import Any

import httpx

from codeassess.config import ExecutionSettings
from codeassess.execution.base import (
    TERMINAL_STATUS_MIN,
    ExecutionResult,
    ExecutionTimeout,
    SubmissionRejected,
    TransportError,
    resolve_language_id,
)
from codeassess.observability import get_logger, log_event, log_warning

logger = get_logger("codeassess.execution")


class Judge0Client:
    """Runs one program per call against a Judge0-compatible service.

    A run is created with ``POST /submissions`` and its token is polled until the
    status id reaches a terminal value. Nothing is retried here; callers decide
    what a failed or timed-out run means for them.
    """

    def __init__(self, settings: ExecutionSettings, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.settings = settings
        self._transport = transport

    def _headers(self) -> dict[str, str]:
        headers = {"content-type": "application/json"}
        if self.settings.auth_token:
            headers["X-Auth-Token"] = self.settings.auth_token
        if self.settings.auth_host:
            headers["X-Auth-Host"] = self.settings.auth_host
        return headers

    async def _request(self, client: httpx.AsyncClient, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        try:
            response = await client.request(method, path, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise TransportError(
                "Execution service returned an error",
                path=path,
                status_code=exc.response.status_code,
            ) from exc
        except httpx.HTTPError as exc:
            raise TransportError(f"Execution service unreachable: {exc}", path=path) from exc

        try:
            data = response.json()
        except ValueError as exc:
            raise TransportError("Execution service returned invalid JSON", path=path, status_code=response.status_code) from exc
        return data if isinstance(data, dict) else {}

    def _to_result(self, token: str, data: dict[str, Any]) -> ExecutionResult:
        status = data.get("status") or {}
        return ExecutionResult(
            token=token,
            status_id=int(status.get("id") or 0),
            status_description=str(status.get("description") or ""),
            stdout=data.get("stdout") or "",
            stderr=data.get("stderr") or "",
            compile_output=data.get("compile_output") or "",
        )

    async def run(self, language: str, source: str, stdin: str, *, purpose: str = "candidate") -> ExecutionResult:
        language_id = resolve_language_id(language)
        payload = {"language_id": language_id, "source_code": source, "stdin": stdin}

        async with httpx.AsyncClient(
            base_url=self.settings.base_url,
            headers=self._headers(),
            timeout=self.settings.http_timeout_seconds,
            transport=self._transport,
        ) as client:
            created = await self._request(client, "POST", "/submissions", params={"base64_encoded": "false"}, json=payload)
            token = created.get("token")
            if not token:
                log_warning(logger, "execution.rejected", purpose=purpose, language=language, response=created)
                raise SubmissionRejected("Execution service did not return a run token")

            log_event(logger, "execution.created", token=token, purpose=purpose, language=language)
            started_at = time.monotonic()
            fetch_path = f"/submissions/{token}"

            while True:
                data = await self._request(client, "GET", fetch_path, params={"base64_encoded": "false"})
                result = self._to_result(str(token), data)
                if result.status_id >= TERMINAL_STATUS_MIN:
                    log_event(
                        logger,
                        "execution.finished",
                        token=token,
                        purpose=purpose,
                        status_id=result.status_id,
                        duration_ms=int((time.monotonic() - started_at) * 1000),
                    )
                    return result

                waited = time.monotonic() - started_at
                if waited > self.settings.timeout_seconds:
                    log_warning(logger, "execution.timeout", token=token, purpose=purpose, waited_seconds=waited)
                    raise ExecutionTimeout(str(token), waited)
                await asyncio.sleep(self.settings.poll_interval_seconds)
