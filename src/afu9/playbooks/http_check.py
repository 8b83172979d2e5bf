"""Built-in ``http_check`` step action."""

from __future__ import annotations

import re
import time
from typing import Mapping

import httpx
import structlog

from afu9.playbooks.models import HttpCheckInput, StepContext, StepResult

logger = structlog.get_logger()

_VARIABLE = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


def substitute_variables(value: str, variables: Mapping[str, str]) -> str:
    """Replace ``${NAME}`` placeholders. Unknown names are left as written."""
    return _VARIABLE.sub(lambda m: str(variables.get(m.group(1), m.group(0))), value)


class HttpCheckAction:
    """Single HTTP request classified by status code and body content."""

    type = "http_check"
    input_model = HttpCheckInput

    def __init__(self, *, default_timeout: float = 10.0, body_limit: int = 1000) -> None:
        self._default_timeout = default_timeout
        self._body_limit = body_limit

    async def run(self, step_input: HttpCheckInput, context: StepContext) -> StepResult:
        url = substitute_variables(step_input.url, context.variables)
        headers = {
            name: substitute_variables(value, context.variables)
            for name, value in step_input.headers.items()
        }
        body = (
            substitute_variables(step_input.body, context.variables)
            if step_input.body is not None
            else None
        )
        timeout = step_input.timeout_seconds or self._default_timeout

        started = time.monotonic()
        try:
            async with httpx.AsyncClient(timeout=timeout) as client:
                response = await client.request(
                    step_input.method.upper(), url, headers=headers, content=body
                )
        except httpx.TimeoutException:
            return StepResult.failure(
                "TIMEOUT", f"Request timed out after {timeout}s", {"url": url}
            )
        except httpx.HTTPError as exc:
            return StepResult.failure("FETCH_ERROR", str(exc) or type(exc).__name__, {"url": url})

        text = response.text
        output = {
            "url": url,
            "method": step_input.method.upper(),
            "status": response.status_code,
            "durationMs": int((time.monotonic() - started) * 1000),
            "body": text[: self._body_limit],
        }

        if response.status_code != step_input.expected_status:
            logger.info(
                "http_check_status_mismatch",
                run_id=context.run_id,
                step_id=context.step_id,
                expected=step_input.expected_status,
                actual=response.status_code,
            )
            return StepResult.failure(
                "STATUS_MISMATCH",
                f"Expected status {step_input.expected_status}, got {response.status_code}",
                output=output,
            )

        if step_input.expected_body_includes and step_input.expected_body_includes not in text:
            return StepResult.failure(
                "BODY_MISMATCH",
                f"Response body does not include '{step_input.expected_body_includes}'",
                output=output,
            )

        return StepResult.success(output)
