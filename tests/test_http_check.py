"""Tests for the http_check step action."""

import httpx
import pytest
import respx
from httpx import Response

from afu9.playbooks.http_check import HttpCheckAction, substitute_variables
from afu9.playbooks.models import HttpCheckInput, StepContext, StepStatus


def make_context(**variables):
    return StepContext(run_id="run-1", step_id="health", env="staging", variables=variables)


class TestSubstituteVariables:
    def test_replaces_known_names(self):
        variables = {"HOST": "api", "DEPLOY_ID": "7"}

        assert (
            substitute_variables("https://${HOST}/health?d=${DEPLOY_ID}", variables)
            == "https://api/health?d=7"
        )

    def test_leaves_unknown_names(self):
        assert substitute_variables("${MISSING}/x", {}) == "${MISSING}/x"


@pytest.mark.asyncio
class TestHttpCheckAction:
    async def test_success(self):
        action = HttpCheckAction()
        step_input = HttpCheckInput(url="https://${HOST}/health", expectedBodyIncludes="ok")

        with respx.mock:
            respx.get("https://api.example.com/health").mock(
                return_value=Response(200, text='{"status": "ok"}')
            )
            result = await action.run(step_input, make_context(HOST="api.example.com"))

        assert result.status is StepStatus.SUCCESS
        assert result.output["status"] == 200
        assert result.output["url"] == "https://api.example.com/health"

    async def test_status_mismatch(self):
        with respx.mock:
            respx.get("https://api.example.com/health").mock(return_value=Response(503))
            result = await HttpCheckAction().run(
                HttpCheckInput(url="https://api.example.com/health"), make_context()
            )

        assert result.status is StepStatus.FAILED
        assert result.error.code == "STATUS_MISMATCH"
        assert result.error.message == "Expected status 200, got 503"
        assert result.output["status"] == 503

    async def test_body_mismatch(self):
        with respx.mock:
            respx.get("https://api.example.com/health").mock(
                return_value=Response(200, text="degraded")
            )
            result = await HttpCheckAction().run(
                HttpCheckInput(url="https://api.example.com/health", expectedBodyIncludes="ok"),
                make_context(),
            )

        assert result.error.code == "BODY_MISMATCH"

    async def test_body_is_truncated(self):
        with respx.mock:
            respx.get("https://api.example.com/health").mock(
                return_value=Response(200, text="x" * 50)
            )
            result = await HttpCheckAction(body_limit=10).run(
                HttpCheckInput(url="https://api.example.com/health"), make_context()
            )

        assert result.output["body"] == "x" * 10

    async def test_post_with_headers_and_body(self):
        with respx.mock:
            route = respx.post("https://api.example.com/hook").mock(return_value=Response(202))
            result = await HttpCheckAction().run(
                HttpCheckInput(
                    url="https://api.example.com/hook",
                    method="post",
                    headers={"X-Env": "${ENV}"},
                    body='{"env": "${ENV}"}',
                    expectedStatus=202,
                ),
                make_context(ENV="staging"),
            )

        assert result.succeeded
        request = route.calls.last.request
        assert request.headers["X-Env"] == "staging"
        assert request.content == b'{"env": "staging"}'

    async def test_timeout(self):
        with respx.mock:
            respx.get("https://api.example.com/health").mock(
                side_effect=httpx.ConnectTimeout("timed out")
            )
            result = await HttpCheckAction().run(
                HttpCheckInput(url="https://api.example.com/health", timeoutSeconds=2),
                make_context(),
            )

        assert result.error.code == "TIMEOUT"
        assert result.error.message == "Request timed out after 2.0s"

    async def test_network_error(self):
        with respx.mock:
            respx.get("https://api.example.com/health").mock(
                side_effect=httpx.ConnectError("connection refused")
            )
            result = await HttpCheckAction().run(
                HttpCheckInput(url="https://api.example.com/health"), make_context()
            )

        assert result.error.code == "FETCH_ERROR"
        assert "connection refused" in result.error.message
