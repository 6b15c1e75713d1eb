"""OpenAI-compatible provider for test planning and generation."""

import json
import re
from typing import Any

import httpx
import structlog

from testflow.enums import ErrorKind
from testflow.exceptions import ExternalServiceError
from testflow.models.domain import CodeContext, GeneratedTests, ReasoningStep, TestPlan
from testflow.providers.base import TestGenerator, TestPlanner

log = structlog.get_logger(__name__)

PLAN_DIFF_CHARS = 8000
GENERATION_DIFF_CHARS = 6000

FRAMEWORK_BY_LANGUAGE = {
    "javascript": "jest",
    "python": "pytest",
    "java": "junit",
}

TEST_CASE_PATTERNS = {
    "javascript": re.compile(r"\b(?:test|it)\("),
    "python": re.compile(r"^\s*(?:async\s+)?def test_", re.MULTILINE),
    "java": re.compile(r"@Test\b"),
}

JSON_OBJECT = re.compile(r"\{[\s\S]*\}")
CODE_FENCE = re.compile(r"```[\w+-]*\n([\s\S]*?)```")

DEFAULT_REASONING_STEPS = [
    ReasoningStep("Analyzed code structure", "high"),
    ReasoningStep("Identified test scenarios", "high"),
    ReasoningStep("Prioritized test coverage", "medium"),
]


def _positive_int(value: Any, default: int) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        return default
    return number if number > 0 else default


def parse_plan(text: str) -> TestPlan:
    """Build a test plan from a model answer.

    The answer should hold a JSON object with ``unitTests``,
    ``integrationTests``, ``edgeCases``, ``reasoning`` and optionally
    ``reasoningSteps``. Anything unparseable falls back to the default
    5/3/2 plan with the raw answer as reasoning.
    """
    match = JSON_OBJECT.search(text)
    data: dict[str, Any] = {}
    if match:
        try:
            parsed = json.loads(match.group(0))
        except json.JSONDecodeError:
            log.warning("plan_json_invalid", length=len(text))
        else:
            if isinstance(parsed, dict):
                data = parsed

    steps = [
        ReasoningStep(str(s.get("description") or s.get("action") or ""), str(s.get("impact", "medium")))
        for s in data.get("reasoningSteps") or []
        if isinstance(s, dict)
    ]
    return TestPlan(
        unit_tests=_positive_int(data.get("unitTests"), 5),
        integration_tests=_positive_int(data.get("integrationTests"), 3),
        edge_cases=_positive_int(data.get("edgeCases"), 2),
        reasoning=str(data.get("reasoning") or text),
        reasoning_steps=steps or list(DEFAULT_REASONING_STEPS),
    )


def extract_code(text: str) -> str:
    """Return the first fenced code block, or the whole answer when unfenced."""
    match = CODE_FENCE.search(text)
    return (match.group(1) if match else text).strip()


def count_tests(code: str, language: str) -> int:
    pattern = TEST_CASE_PATTERNS.get(language, TEST_CASE_PATTERNS["javascript"])
    return len(pattern.findall(code))


class OpenAICompatibleProvider(TestPlanner, TestGenerator):
    """Planner and generator for OpenAI-compatible chat completion servers.

    Works with hosted OpenAI as well as vLLM, LMStudio and other servers
    implementing the chat completions API.
    """

    def __init__(
        self,
        base_url: str = "https://api.openai.com/v1",
        model: str = "gpt-4o-mini",
        api_key: str | None = None,
        timeout: float = 120.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize provider.

        Args:
            base_url: API base URL (e.g., http://localhost:8000/v1)
            model: Model identifier to use
            api_key: Optional API key for authentication
            timeout: Request timeout in seconds
            transport: Optional httpx transport, used by tests
        """
        self.base_url = base_url.rstrip("/")
        self.model = model

        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"

        self.client = httpx.AsyncClient(timeout=timeout, headers=headers, transport=transport)

    async def aclose(self) -> None:
        await self.client.aclose()

    async def complete(self, prompt: str, temperature: float = 0.7) -> str:
        """Send a single-message chat completion and return the answer text.

        Raises:
            ExternalServiceError: On transport errors, error statuses or an
                answer without choices.
        """
        try:
            response = await self.client.post(
                f"{self.base_url}/chat/completions",
                json={
                    "model": self.model,
                    "messages": [{"role": "user", "content": prompt}],
                    "temperature": temperature,
                },
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            error_detail = str(e)
            try:
                error_detail = e.response.json().get("error", {}).get("message", error_detail)
            except ValueError:
                log.debug("error_body_not_json", status_code=e.response.status_code)
            log.error("completion_failed", status_code=e.response.status_code, error=error_detail)
            kind = ErrorKind.UNAUTHORIZED if e.response.status_code == 401 else ErrorKind.API_ERROR
            raise ExternalServiceError(
                f"AI provider error: {error_detail}", status_code=e.response.status_code, kind=kind
            ) from e
        except httpx.TimeoutException as e:
            log.error("completion_timeout", model=self.model)
            raise ExternalServiceError("AI provider timed out", kind=ErrorKind.TIMEOUT) from e
        except httpx.HTTPError as e:
            log.error("completion_failed", error=str(e))
            raise ExternalServiceError(f"AI provider unreachable: {e}") from e

        result = response.json()
        choices = result.get("choices", [])
        if not choices:
            raise ExternalServiceError("AI provider returned no choices")

        output: str = choices[0].get("message", {}).get("content") or ""
        usage = result.get("usage", {})
        log.info("completion_received", model=self.model, output_length=len(output), tokens=usage.get("total_tokens"))
        return output

    async def plan_tests(self, context: CodeContext) -> TestPlan:
        prompt = f"""Analyze the following code change and create a test plan.

**{context.title}**

{context.description}

Code Diff:
```
{context.diff[:PLAN_DIFF_CHARS]}
```

Create a test plan with:
1. Number of unit tests needed
2. Number of integration tests needed
3. Number of edge cases to test
4. Reasoning for your test strategy, as a few short steps with their impact

Respond in JSON format:
{{"unitTests": number, "integrationTests": number, "edgeCases": number, "reasoning": "string",
  "reasoningSteps": [{{"description": "string", "impact": "high|medium|low"}}]}}
"""
        plan = parse_plan(await self.complete(prompt, temperature=0.2))
        log.info("test_plan_created", total_tests=plan.total_tests, steps=len(plan.reasoning_steps))
        return plan

    async def generate_tests(self, context: CodeContext, plan: TestPlan) -> GeneratedTests:
        language = context.language
        framework = FRAMEWORK_BY_LANGUAGE.get(language, "jest")
        prompt = f"""Generate comprehensive test code for the following test plan:

Unit Tests: {plan.unit_tests}
Integration Tests: {plan.integration_tests}
Edge Cases: {plan.edge_cases}

Strategy:
{plan.reasoning}

Code to test:
```{language}
{context.diff[:GENERATION_DIFF_CHARS]}
```

Generate complete, production-ready test code in {language} using the {framework} framework.
Include proper assertions, error handling and edge case coverage. Return the code in a single
fenced code block.
"""
        answer = await self.complete(prompt)
        code = extract_code(answer)
        generated = GeneratedTests(
            code=code,
            language=language,
            framework=framework,
            test_count=count_tests(code, language),
            reasoning=plan.reasoning,
        )
        log.info("tests_generated", language=language, framework=framework, test_count=generated.test_count)
        return generated
