import unittest
from unittest import mock

import requests

from stack_tester.config import OrchestrationConfig, ProjectsConfig
from stack_tester.orchestrator import StackFailedError, StackOrchestrator
from stack_tester.projects import (
    JobInfo,
    NotModifiedError,
    ProjectConfig,
    ProjectsAPIError,
    ProjectsClient,
    StackConfig,
    State,
)


STACK = StackConfig(project_id="proj-1", config_id="stack-1", name="demo-stack", region="eu-de")


def make_response(status_code=200, payload=None, text=""):
    response = mock.Mock()
    response.status_code = status_code
    response.json.return_value = payload or {}
    response.text = text
    return response


def token_response():
    return make_response(payload={"access_token": "tok-1", "expires_in": 3600})


def html_response(url):
    # 网关返回的错误页面不是 JSON
    response = make_response(text="<html>Service Unavailable</html>")
    response.url = url
    response.json.side_effect = ValueError("Expecting value: line 1 column 1 (char 0)")
    return response


class ProjectsClientTests(unittest.TestCase):
    def setUp(self) -> None:
        self.session = mock.MagicMock()
        self.session.post.return_value = token_response()
        self.config = ProjectsConfig(
            api_key="secret",
            endpoint="https://projects.test",
            iam_endpoint="https://iam.test",
            schematics_endpoint="https://{location}.schematics.test",
            request_timeout=5,
        )
        self.client = ProjectsClient(self.config, session=self.session)

    def test_requires_api_key(self) -> None:
        with self.assertRaises(ValueError):
            ProjectsClient(ProjectsConfig(api_key=None), session=self.session)

    def test_proxy_is_applied_to_session(self) -> None:
        config = ProjectsConfig(api_key="secret", proxy="http://127.0.0.1:7890")
        session = mock.MagicMock()
        ProjectsClient(config, session=session)
        self.assertEqual(
            session.proxies, {"http": "http://127.0.0.1:7890", "https": "http://127.0.0.1:7890"}
        )

    def test_get_config_parses_payload_and_sends_token(self) -> None:
        self.session.request.return_value = make_response(
            payload={"id": "stack-1", "state": "deployed", "definition": {"name": "demo-stack"}}
        )

        config = self.client.get_config(STACK)

        self.assertEqual(config.name, "demo-stack")
        self.assertIs(config.state, State.DEPLOYED)
        args, kwargs = self.session.request.call_args
        self.assertEqual(args, ("GET", "https://projects.test/v1/projects/proj-1/configs/stack-1"))
        self.assertEqual(kwargs["headers"]["Authorization"], "Bearer tok-1")
        self.assertEqual(kwargs["timeout"], 5)

        token_args, token_kwargs = self.session.post.call_args
        self.assertEqual(token_args, ("https://iam.test/identity/token",))
        self.assertEqual(token_kwargs["data"]["apikey"], "secret")

    def test_token_is_cached(self) -> None:
        self.session.request.return_value = make_response(payload={"id": "stack-1"})

        self.client.get_config(STACK)
        self.client.get_config(STACK)

        self.assertEqual(self.session.post.call_count, 1)

    def test_token_failure_raises(self) -> None:
        self.session.post.return_value = make_response(status_code=400, text="bad api key")
        with self.assertRaises(ProjectsAPIError) as ctx:
            self.client.get_config(STACK)
        self.assertEqual(ctx.exception.status_code, 400)

    def test_token_response_without_access_token_raises(self) -> None:
        self.session.post.return_value = make_response(payload={"errorCode": "BXNIM0415E"})

        with self.assertRaises(ProjectsAPIError) as ctx:
            self.client.get_config(STACK)
        self.assertIn("could not be parsed", str(ctx.exception))
        self.session.request.assert_not_called()

    def test_non_json_config_body_raises_api_error(self) -> None:
        url = "https://projects.test/v1/projects/proj-1/configs/stack-1"
        self.session.request.return_value = html_response(url)

        with self.assertRaises(ProjectsAPIError) as ctx:
            self.client.get_config(STACK)
        self.assertIn("is not valid JSON", str(ctx.exception))
        self.assertIn(url, str(ctx.exception))
        self.assertEqual(ctx.exception.status_code, 200)

    def test_non_object_config_body_raises_api_error(self) -> None:
        response = make_response()
        response.json.return_value = ["not", "an", "object"]
        self.session.request.return_value = response

        with self.assertRaises(ProjectsAPIError):
            self.client.get_config(STACK)

    def test_orchestrator_reports_non_json_body_as_stack_failure(self) -> None:
        def respond(method, url, **kwargs):
            if method == "POST":
                return make_response()
            return html_response(url)

        self.session.request.side_effect = respond
        orchestrator = StackOrchestrator(
            self.client,
            config=OrchestrationConfig(poll_interval_seconds=30, deploy_timeout_minutes=5),
            clock=lambda: 0.0,
            sleep=lambda seconds: None,
        )

        errors = orchestrator.run_deploy(STACK)

        self.assertEqual(len(errors), 1)
        self.assertIsInstance(errors[0], StackFailedError)
        self.assertIn("is not valid JSON", str(errors[0]))

    def test_not_modified_raises_dedicated_error(self) -> None:
        self.session.request.return_value = make_response(status_code=304)

        with self.assertRaises(NotModifiedError):
            self.client.validate_project_config(STACK)
        args, _ = self.session.request.call_args
        self.assertEqual(
            args, ("POST", "https://projects.test/v1/projects/proj-1/configs/stack-1/validate")
        )

    def test_http_error_carries_status_code(self) -> None:
        self.session.request.return_value = make_response(status_code=500, text="internal error")

        with self.assertRaises(ProjectsAPIError) as ctx:
            self.client.undeploy_config(STACK)
        self.assertEqual(ctx.exception.status_code, 500)
        self.assertIn("internal error", str(ctx.exception))

    def test_network_error_is_wrapped(self) -> None:
        self.session.request.side_effect = requests.ConnectionError("connection refused")

        with self.assertRaises(ProjectsAPIError):
            self.client.sync_config("proj-1", "a")

    def test_sync_url(self) -> None:
        self.session.request.return_value = make_response()

        self.client.sync_config("proj-1", "a")

        args, _ = self.session.request.call_args
        self.assertEqual(args, ("POST", "https://projects.test/v1/projects/proj-1/configs/a/sync"))

    def test_get_stack_members_follows_definition_order(self) -> None:
        payloads = {
            "https://projects.test/v1/projects/proj-1/configs/stack-1": {
                "id": "stack-1",
                "definition": {
                    "members": [
                        {"name": "network", "config_id": "a"},
                        {"name": "database", "config_id": "b"},
                    ]
                },
            },
            "https://projects.test/v1/projects/proj-1/configs/a": {
                "id": "a", "state": "deployed", "definition": {"name": "network"},
            },
            "https://projects.test/v1/projects/proj-1/configs/b": {
                "id": "b", "state": "deploying", "definition": {"name": "database"},
            },
        }
        self.session.request.side_effect = lambda method, url, **kwargs: make_response(
            payload=payloads[url]
        )

        members = self.client.get_stack_members(STACK)

        self.assertEqual([m.name for m in members], ["network", "database"])
        self.assertEqual([m.state for m in members], [State.DEPLOYED, State.DEPLOYING])

    def test_job_logs_for_member(self) -> None:
        self.session.request.return_value = make_response(text="terraform output")
        member = ProjectConfig(id="a", last_deployed=JobInfo(job_id="job-42", result="failed"))

        summary, full_log = self.client.get_schematics_job_logs_for_member(member, "network", "eu-de")

        self.assertIn("Schematics Deploy Job ID: job-42", summary)
        self.assertEqual(full_log, "Job logs for Job ID: job-42 member: network\nterraform output")
        args, kwargs = self.session.request.call_args
        self.assertEqual(args, ("GET", "https://eu.schematics.test/v2/jobs/job-42/logs"))
        self.assertEqual(kwargs["headers"]["Accept"], "text/plain")

    def test_job_log_failure_is_reported_not_raised(self) -> None:
        self.session.request.return_value = make_response(status_code=404, text="no such job")
        member = ProjectConfig(id="a", last_undeployed=JobInfo(job_id="job-9"))

        summary, full_log = self.client.get_schematics_job_logs_for_member(member, "network", "us-south")

        self.assertIn("Undeploy", summary)
        self.assertTrue(full_log.startswith("Error getting job logs for Job ID: job-9 member: network"))

    def test_job_logs_without_job(self) -> None:
        summary, full_log = self.client.get_schematics_job_logs_for_member(
            ProjectConfig(id="a"), "network", "us-south"
        )

        self.assertIn("no job information available", summary)
        self.assertEqual(full_log, "")
        self.session.request.assert_not_called()


if __name__ == "__main__":
    unittest.main()
