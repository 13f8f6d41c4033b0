from __future__ import annotations

import json
import random
import re
from dataclasses import dataclass, field
from typing import Any

import httpx

from codeassess.config import GeneratorSettings, generator_settings
from codeassess.errors import UpstreamError
from codeassess.observability import get_logger, log_event, log_warning

logger = get_logger("codeassess.generator")

_JSON_FENCE = re.compile(r"```(?:json)?\s*\n([\s\S]*?)\n```")

PROMPT_TEMPLATE = """You are an expert at generating test cases for coding problems. Based on the problem statement and constraints, generate test case inputs.

Problem Statement: {statement}

Constraints: {constraints}

Generate test cases in the following format:
- Normal cases: {normal_count} typical inputs that test the main functionality
- Edge cases: {edge_count} boundary values and edge cases (minimum/maximum values, empty inputs, etc.)
- Random cases: {random_count} random but valid inputs

Return ONLY a JSON object with this exact structure:
{{
  "normal": ["input1", "input2", ...],
  "edge": ["input1", "input2", ...],
  "random": ["input1", "input2", ...]
}}

Each input should be a single line string that represents the input format described in the problem. Do not include any explanations or additional text.
"""


@dataclass
class GeneratedInputs:
    normal: list[str] = field(default_factory=list)
    edge: list[str] = field(default_factory=list)
    random: list[str] = field(default_factory=list)
    source: str = "ai"

    def buckets(self) -> list[tuple[str, list[str]]]:
        return [("normal", self.normal), ("edge", self.edge), ("random", self.random)]


def build_prompt(statement: str, constraints: Any, normal_count: int, edge_count: int, random_count: int) -> str:
    if isinstance(constraints, str):
        constraints_text = constraints
    else:
        constraints_text = json.dumps(constraints, indent=2, ensure_ascii=False)
    return PROMPT_TEMPLATE.format(
        statement=statement,
        constraints=constraints_text,
        normal_count=normal_count,
        edge_count=edge_count,
        random_count=random_count,
    )


def parse_generated_inputs(text: str, normal_count: int, edge_count: int, random_count: int) -> GeneratedInputs:
    match = _JSON_FENCE.search(text)
    raw = match.group(1) if match else text.strip()
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValueError("Generator response is not valid JSON") from exc

    if not isinstance(data, dict):
        raise ValueError("Generator response must be a JSON object")
    buckets: dict[str, list[str]] = {}
    for name in ("normal", "edge", "random"):
        values = data.get(name)
        if not isinstance(values, list):
            raise ValueError(f"Generator response is missing the '{name}' list")
        buckets[name] = [str(value) for value in values]

    return GeneratedInputs(
        normal=buckets["normal"][:normal_count],
        edge=buckets["edge"][:edge_count],
        random=buckets["random"][:random_count],
    )


def fallback_inputs(normal_count: int, edge_count: int, random_count: int) -> GeneratedInputs:
    return GeneratedInputs(
        normal=[f"{i + 1} {i + 2}" for i in range(normal_count)],
        edge=["0 0" if i == 0 else "1 1" for i in range(edge_count)],
        random=[f"{random.randint(0, 99)} {random.randint(0, 99)}" for _ in range(random_count)],
        source="fallback",
    )


class TestcaseGenerator:
    """Asks an OpenAI-compatible chat endpoint for labelled testcase inputs."""

    __test__ = False

    def __init__(self, settings: GeneratorSettings, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.settings = settings
        self._transport = transport

    async def _complete(self, prompt: str) -> str:
        if not self.settings.api_key:
            raise UpstreamError("Testcase generator is not configured")

        try:
            async with httpx.AsyncClient(
                base_url=self.settings.base_url,
                timeout=self.settings.timeout_seconds,
                transport=self._transport,
            ) as client:
                response = await client.post(
                    "/chat/completions",
                    headers={"Authorization": f"Bearer {self.settings.api_key}"},
                    json={
                        "model": self.settings.model,
                        "messages": [{"role": "user", "content": prompt}],
                        "max_tokens": self.settings.max_tokens,
                        "temperature": 0.7,
                    },
                )
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPError as exc:
            raise UpstreamError(f"Testcase generator request failed: {exc}") from exc
        except ValueError as exc:
            raise UpstreamError("Testcase generator returned invalid JSON") from exc

        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            raise UpstreamError("Testcase generator returned an unexpected payload") from exc
        if not content:
            raise UpstreamError("Testcase generator returned an empty response")
        return str(content)

    async def generate(
        self,
        statement: str,
        constraints: Any,
        normal_count: int = 3,
        edge_count: int = 2,
        random_count: int = 2,
    ) -> GeneratedInputs:
        prompt = build_prompt(statement, constraints, normal_count, edge_count, random_count)
        try:
            text = await self._complete(prompt)
            inputs = parse_generated_inputs(text, normal_count, edge_count, random_count)
        except (UpstreamError, ValueError) as exc:
            if not self.settings.fallback_enabled:
                if isinstance(exc, UpstreamError):
                    raise
                raise UpstreamError(str(exc)) from exc
            log_warning(logger, "generator.fallback", reason=str(exc))
            return fallback_inputs(normal_count, edge_count, random_count)

        log_event(
            logger,
            "generator.completed",
            normal=len(inputs.normal),
            edge=len(inputs.edge),
            random=len(inputs.random),
        )
        return inputs


default_generator = TestcaseGenerator(generator_settings())
