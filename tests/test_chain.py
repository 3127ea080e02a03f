"""Tests for the chain runner: context propagation, stop-on-error, extraction."""

from unittest.mock import MagicMock

import pytest

from nurl.auth import AuthKind, CredentialStore
from nurl.chain import (
    ChainDefinition,
    ChainRunner,
    ChainStep,
    ErrorKind,
    StepState,
    run_chain,
)
from nurl.core import RequestDefinition
from nurl.exceptions import RequestNotFound, TransportError
from tests.conftest import make_request_result


class FakeRequestStore:
    def __init__(self, *requests):
        self.requests = {r.name: r for r in requests}

    def get_request_by_name(self, name):
        if name not in self.requests:
            raise RequestNotFound(name)
        return self.requests[name]


def _step(url, **kwargs):
    return ChainStep(inline={"method": "GET", "url": url}, **kwargs)


def _three_steps():
    return [_step("http://api/one"), _step("http://api/two"), _step("http://api/three")]


class TestContextPropagation:
    def test_extracted_token_reaches_next_step(self):
        mock_exec = MagicMock(
            side_effect=[
                make_request_result(body={"access_token": "abc123"}),
                make_request_result(body={"ok": True}),
            ],
        )
        steps = [
            _step("{{base}}/login", extract={"token": "body.access_token"}),
            _step("{{base}}/{{token}}"),
        ]
        result = run_chain(
            steps,
            stop_on_error=True,
            http_executor=mock_exec,
            global_vars={"base": "http://api"},
        )
        assert result.success is True
        assert mock_exec.call_args_list[1].kwargs["url"] == "http://api/abc123"
        assert result.context == {"token": "abc123"}

    def test_context_shadows_environment_and_use_shadows_context(self):
        mock_exec = MagicMock(
            side_effect=[
                make_request_result(body={"id": "from-ctx"}),
                make_request_result(body={}),
                make_request_result(body={}),
            ],
        )
        steps = [
            _step("http://api/{{id}}", extract={"id": "body.id"}),
            _step("http://api/{{id}}"),
            _step("http://api/{{id}}", use={"id": "from-use"}),
        ]
        run_chain(steps, http_executor=mock_exec, env_vars={"id": "from-env"})
        urls = [c.kwargs["url"] for c in mock_exec.call_args_list]
        assert urls == [
            "http://api/from-env",
            "http://api/from-ctx",
            "http://api/from-use",
        ]

    def test_use_applies_to_one_step_only(self):
        mock_exec = MagicMock(return_value=make_request_result(body={}))
        steps = [_step("http://api/{{v}}", use={"v": "x"}), _step("http://api/{{v}}")]
        result = run_chain(steps, http_executor=mock_exec)
        urls = [c.kwargs["url"] for c in mock_exec.call_args_list]
        assert urls == ["http://api/x", "http://api/{{v}}"]
        assert result.context == {}

    def test_headers_body_and_auth_interpolated(self):
        mock_exec = MagicMock(
            side_effect=[
                make_request_result(body={"token": "tok", "user": {"id": 5}}),
                make_request_result(body={}),
            ],
        )
        steps = [
            _step("http://api/login", extract={"token": "body.token", "uid": "body.user.id"}),
            ChainStep(
                inline={
                    "method": "post",
                    "url": "http://api/users/{{uid}}",
                    "headers": {"X-Req": "{{$uuid}}", "X-User": "{{uid}}"},
                    "body": {"owner": "{{uid}}", "tags": ["{{token}}"]},
                    "auth": {"type": "bearer", "token": "{{token}}"},
                },
            ),
        ]
        run_chain(steps, http_executor=mock_exec)
        kwargs = mock_exec.call_args_list[1].kwargs
        assert kwargs["method"] == "POST"
        assert kwargs["url"] == "http://api/users/5"
        assert kwargs["headers"]["X-User"] == "5"
        assert len(kwargs["headers"]["X-Req"]) == 36
        assert kwargs["body"] == {"owner": "5", "tags": ["tok"]}
        assert kwargs["auth"].kind is AuthKind.BEARER
        assert kwargs["auth"].token == "tok"

    def test_default_headers_under_request_headers(self):
        mock_exec = MagicMock(return_value=make_request_result(body={}))
        steps = [ChainStep(inline={"url": "http://api", "headers": {"Accept": "text/plain"}})]
        run_chain(
            steps,
            http_executor=mock_exec,
            default_headers={"Accept": "application/json", "X-Default": "1"},
        )
        headers = mock_exec.call_args.kwargs["headers"]
        assert headers == {"Accept": "text/plain", "X-Default": "1"}

    def test_extraction_miss_does_not_touch_context(self):
        mock_exec = MagicMock(
            side_effect=[
                make_request_result(body={"a": 1}),
                make_request_result(body={"b": 2}),
            ],
        )
        steps = [
            _step("http://api/1", extract={"a": "body.a"}),
            _step("http://api/2", extract={"a": "body.missing", "b": "body.b"}),
        ]
        result = run_chain(steps, http_executor=mock_exec)
        assert result.success is True
        assert result.context == {"a": 1, "b": 2}
        assert all(o.state is StepState.COMPLETED for o in result.results)

    def test_later_extraction_overwrites(self):
        mock_exec = MagicMock(
            side_effect=[
                make_request_result(body={"v": "first"}),
                make_request_result(body={"v": "second"}),
            ],
        )
        steps = [
            _step("http://api/1", extract={"v": "body.v"}),
            _step("http://api/2", extract={"v": "body.v"}),
        ]
        assert run_chain(steps, http_executor=mock_exec).context == {"v": "second"}

    def test_extract_from_status_and_headers(self):
        mock_exec = MagicMock(
            return_value=make_request_result(
                status_code=201,
                body={},
                headers={"Location": "/items/3"},
            ),
        )
        steps = [_step("http://api", extract={"code": "status", "loc": "headers.Location"})]
        assert run_chain(steps, http_executor=mock_exec).context == {
            "code": 201,
            "loc": "/items/3",
        }


class TestStopOnError:
    def test_error_status_aborts_chain(self):
        mock_exec = MagicMock(
            side_effect=[
                make_request_result(status_code=200, body={}),
                make_request_result(status_code=500, body={"error": "boom"}, reason="Server Error"),
                make_request_result(status_code=200, body={}),
            ],
        )
        result = run_chain(_three_steps(), stop_on_error=True, http_executor=mock_exec)
        assert result.success is False
        assert len(result.results) == 2
        assert mock_exec.call_count == 2
        aborted = result.results[1]
        assert aborted.state is StepState.ABORTED
        assert aborted.error_kind is ErrorKind.HTTP_ERROR_STATUS
        assert aborted.status == 500
        assert aborted.response["body"] == {"error": "boom"}
        assert result.aborted_at is aborted

    def test_error_status_skips_extraction_when_aborting(self):
        mock_exec = MagicMock(return_value=make_request_result(status_code=401, body={"t": "x"}))
        steps = [_step("http://api", extract={"t": "body.t"})]
        result = run_chain(steps, stop_on_error=True, http_executor=mock_exec)
        assert result.context == {}

    def test_error_status_continues_without_stop(self):
        mock_exec = MagicMock(
            side_effect=[
                make_request_result(status_code=200, body={}),
                make_request_result(status_code=500, body={}),
                make_request_result(status_code=200, body={}),
            ],
        )
        result = run_chain(_three_steps(), stop_on_error=False, http_executor=mock_exec)
        assert len(result.results) == 3
        assert result.success is True
        assert result.any_failed is True
        assert result.results[1].state is StepState.COMPLETED
        assert result.results[1].ok is False

    def test_error_status_still_extracts_without_stop(self):
        mock_exec = MagicMock(return_value=make_request_result(status_code=404, body={"e": "nf"}))
        steps = [_step("http://api", extract={"e": "body.e"})]
        result = run_chain(steps, stop_on_error=False, http_executor=mock_exec)
        assert result.context == {"e": "nf"}

    def test_all_ok_reports_no_failures(self):
        mock_exec = MagicMock(return_value=make_request_result(body={}))
        result = run_chain(_three_steps(), http_executor=mock_exec)
        assert result.success is True
        assert result.any_failed is False
        assert [o.index for o in result.results] == [1, 2, 3]


class TestStepFailures:
    def test_unknown_request_aborts(self):
        mock_exec = MagicMock(return_value=make_request_result(body={}))
        steps = [ChainStep(request="missing"), _step("http://api")]
        result = run_chain(
            steps,
            stop_on_error=True,
            request_store=FakeRequestStore(),
            http_executor=mock_exec,
        )
        assert result.success is False
        assert len(result.results) == 1
        assert result.results[0].error_kind is ErrorKind.REQUEST_NOT_FOUND
        assert result.results[0].request == "missing"
        mock_exec.assert_not_called()

    def test_unknown_request_skipped_without_stop(self):
        mock_exec = MagicMock(return_value=make_request_result(body={"x": 1}))
        steps = [
            ChainStep(request="missing", extract={"x": "body.x"}),
            _step("http://api/{{x}}"),
        ]
        result = run_chain(
            steps,
            stop_on_error=False,
            request_store=FakeRequestStore(),
            http_executor=mock_exec,
        )
        assert result.success is True
        assert result.results[0].state is StepState.FAILED
        assert result.context == {}
        assert mock_exec.call_args.kwargs["url"] == "http://api/{{x}}"

    def test_no_request_store_means_not_found(self):
        result = run_chain([ChainStep(request="login")], http_executor=MagicMock())
        assert result.results[0].error_kind is ErrorKind.REQUEST_NOT_FOUND

    def test_transport_error_field(self):
        mock_exec = MagicMock(
            side_effect=[
                make_request_result(error="Connection error: refused"),
                make_request_result(body={}),
            ],
        )
        result = run_chain(_three_steps()[:2], stop_on_error=True, http_executor=mock_exec)
        assert result.success is False
        assert len(result.results) == 1
        failed = result.results[0]
        assert failed.error_kind is ErrorKind.TRANSPORT_FAILURE
        assert failed.error == "Connection error: refused"
        assert failed.response is None

    def test_transport_exception_continues_without_stop(self):
        mock_exec = MagicMock(
            side_effect=[TransportError("timed out"), make_request_result(body={})],
        )
        result = run_chain(_three_steps()[:2], stop_on_error=False, http_executor=mock_exec)
        assert result.success is True
        assert result.results[0].state is StepState.FAILED
        assert result.results[0].error_kind is ErrorKind.TRANSPORT_FAILURE
        assert result.results[1].state is StepState.COMPLETED


class TestSavedRequests:
    def test_saved_request_with_extract(self):
        login = RequestDefinition(
            name="login",
            method="POST",
            url="{{base}}/login",
            body={"user": "{{user}}"},
            extract={"token": "body.token"},
        )
        profile = RequestDefinition(
            name="profile",
            url="{{base}}/me",
            auth={"type": "bearer", "token": "{{token}}"},
        )
        mock_exec = MagicMock(
            side_effect=[
                make_request_result(body={"token": "t-1"}),
                make_request_result(body={"name": "admin"}),
            ],
        )
        result = run_chain(
            [ChainStep(request="login", use={"user": "admin"}), ChainStep(request="profile")],
            request_store=FakeRequestStore(login, profile),
            http_executor=mock_exec,
            env_vars={"base": "http://api"},
        )
        first, second = mock_exec.call_args_list
        assert first.kwargs["body"] == {"user": "admin"}
        assert second.kwargs["auth"].token == "t-1"
        assert result.context == {"token": "t-1"}
        assert [o.request for o in result.results] == ["login", "profile"]

    def test_step_extract_merged_over_request_extract(self):
        req = RequestDefinition(name="r", url="http://api", extract={"a": "body.a", "b": "body.b"})
        mock_exec = MagicMock(return_value=make_request_result(body={"a": 1, "b": 2, "c": 3}))
        result = run_chain(
            [ChainStep(request="r", extract={"b": "body.c"})],
            request_store=FakeRequestStore(req),
            http_executor=mock_exec,
        )
        assert result.context == {"a": 1, "b": 3}

    def test_inline_fields_override_saved_request(self):
        req = RequestDefinition(name="r", method="GET", url="http://api/a")
        mock_exec = MagicMock(return_value=make_request_result(body={}))
        run_chain(
            [ChainStep(request="r", inline={"method": "DELETE"})],
            request_store=FakeRequestStore(req),
            http_executor=mock_exec,
        )
        assert mock_exec.call_args.kwargs["method"] == "DELETE"
        assert mock_exec.call_args.kwargs["url"] == "http://api/a"

    def test_auth_ref_resolved_from_credentials(self):
        req = RequestDefinition(name="r", url="http://api", auth={"type": "bearer", "ref": "gh"})
        mock_exec = MagicMock(return_value=make_request_result(body={}))
        run_chain(
            [ChainStep(request="r")],
            request_store=FakeRequestStore(req),
            http_executor=mock_exec,
            credential_store=CredentialStore({"tokens": {"gh": "secret"}}),
        )
        assert mock_exec.call_args.kwargs["auth"].headers() == {"Authorization": "Bearer secret"}


class TestDelays:
    def test_delay_after_completed_step(self):
        sleep = MagicMock()
        mock_exec = MagicMock(return_value=make_request_result(body={}))
        steps = [_step("http://api/1", delay_ms=250), _step("http://api/2")]
        ChainRunner(http_executor=mock_exec, sleep=sleep).run(steps)
        sleep.assert_called_once_with(0.25)

    def test_no_delay_after_abort(self):
        sleep = MagicMock()
        mock_exec = MagicMock(return_value=make_request_result(status_code=500, body={}))
        ChainRunner(http_executor=mock_exec, sleep=sleep).run(
            [_step("http://api", delay_ms=100)],
            stop_on_error=True,
        )
        sleep.assert_not_called()


class TestRunnerIsolation:
    def test_each_run_owns_its_context(self):
        mock_exec = MagicMock(return_value=make_request_result(body={"v": 1}))
        runner = ChainRunner(http_executor=mock_exec)
        steps = [_step("http://api", extract={"v": "body.v"})]
        first = runner.run(steps)
        second = runner.run([_step("http://api/{{v}}")])
        assert first.context == {"v": 1}
        assert second.context == {}
        assert mock_exec.call_args.kwargs["url"] == "http://api/{{v}}"

    def test_steps_accept_plain_dicts(self):
        mock_exec = MagicMock(return_value=make_request_result(body={"id": 4}))
        result = run_chain(
            [{"url": "http://api", "extract": {"id": "body.id"}, "delayMs": 0}],
            http_executor=mock_exec,
        )
        assert result.context == {"id": 4}


class TestChainDefinitions:
    def test_from_dict(self):
        definition = ChainDefinition.from_dict(
            {
                "name": "flow",
                "collection": "api",
                "stop_on_error": False,
                "steps": [
                    {"request": "login", "use": {"u": "a"}, "extract": {"t": "body.t"}},
                    {"method": "GET", "url": "/x", "delayMs": 50},
                ],
            },
        )
        assert definition.collection == "api"
        assert definition.stop_on_error is False
        first, second = definition.steps
        assert first.request == "login"
        assert first.use == {"u": "a"}
        assert first.inline == {}
        assert second.inline == {"method": "GET", "url": "/x"}
        assert second.delay_ms == 50
        assert second.identity == "GET /x"

    def test_stop_on_error_defaults_true(self):
        assert ChainDefinition.from_dict({"steps": []}).stop_on_error is True

    @pytest.mark.parametrize(
        ("raw", "expected"),
        [(False, False), ("false", False), ("No", False), (0, False), ("true", True), ("maybe", True)],
    )
    def test_stop_on_error_flag_forms(self, raw, expected):
        definition = ChainDefinition.from_dict({"steps": [], "stop_on_error": raw})
        assert definition.stop_on_error is expected

    @pytest.mark.parametrize(
        ("data", "identity"),
        [
            ({"request": "login"}, "login"),
            ({"name": "ping", "url": "/p"}, "ping"),
            ({"url": "/p"}, "GET /p"),
        ],
    )
    def test_identity(self, data, identity):
        assert ChainStep.from_dict(data).identity == identity
