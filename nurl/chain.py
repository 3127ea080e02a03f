"""nurl chain - sequential request execution with value extraction.

Each step sees a scope built from (narrowest first):

1. the step's ``use`` overrides
2. the chain context (values extracted by earlier steps)
3. the collection's active environment
4. global variables

Per step: resolve the request, interpolate URL/headers/body/auth, execute,
optionally abort on an error status, extract values into the context.
Step failures are recorded as outcomes, never raised to the caller.
"""

import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from nurl import executor
from nurl.auth import CredentialStore
from nurl.core import RequestDefinition
from nurl.exceptions import RequestNotFound, TransportError
from nurl.filters import extract_by_path
from nurl.variables import interpolate_string, interpolate_structure, resolve_scope

logger = logging.getLogger(__name__)

INLINE_FIELDS = ("name", "method", "url", "headers", "body", "auth")

_TRUE_WORDS = ("true", "yes", "on", "1")
_FALSE_WORDS = ("false", "no", "off", "0")


def _as_bool(value: Any, default: bool) -> bool:
    """Read a YAML flag that may arrive as a bool, a number or a quoted word."""
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE_WORDS:
        return True
    if text in _FALSE_WORDS:
        return False
    logger.warning("Ignoring non-boolean flag value %r, using %s", value, default)
    return default


class StepState(Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    ABORTED = "aborted"


class ErrorKind(Enum):
    REQUEST_NOT_FOUND = "RequestNotFound"
    TRANSPORT_FAILURE = "TransportFailure"
    HTTP_ERROR_STATUS = "HttpErrorStatus"


@dataclass
class ChainStep:
    """One step of a chain: a saved request name and/or inline fields."""

    request: str | None = None
    inline: dict[str, Any] = field(default_factory=dict)
    use: dict[str, Any] = field(default_factory=dict)
    extract: dict[str, str] = field(default_factory=dict)
    delay_ms: int = 0

    @classmethod
    def from_dict(cls, data: dict) -> "ChainStep":
        delay = data.get("delay_ms", data.get("delayMs")) or 0
        return cls(
            request=data.get("request"),
            inline={k: data[k] for k in INLINE_FIELDS if k in data},
            use=dict(data.get("use") or {}),
            extract=dict(data.get("extract") or {}),
            delay_ms=int(delay),
        )

    @property
    def identity(self) -> str:
        if self.request:
            return self.request
        if self.inline.get("name"):
            return self.inline["name"]
        method = str(self.inline.get("method") or "GET").upper()
        return f"{method} {self.inline.get('url', '')}"


@dataclass
class StepOutcome:
    index: int
    request: str
    state: StepState
    status: int | None = None
    time_ms: float | None = None
    response: dict | None = None
    error_kind: ErrorKind | None = None
    error: str | None = None
    url: str | None = None

    @property
    def ok(self) -> bool:
        return self.state is StepState.COMPLETED and (self.status or 0) < 400


@dataclass
class ChainResult:
    success: bool = True
    results: list[StepOutcome] = field(default_factory=list)
    context: dict[str, Any] = field(default_factory=dict)

    @property
    def any_failed(self) -> bool:
        """Stricter than ``success``: true if any step failed or got >= 400."""
        return any(not outcome.ok for outcome in self.results)

    @property
    def aborted_at(self) -> StepOutcome | None:
        for outcome in self.results:
            if outcome.state is StepState.ABORTED:
                return outcome
        return None


@dataclass
class ChainDefinition:
    name: str
    steps: list[ChainStep]
    description: str = ""
    collection: str | None = None
    stop_on_error: bool = True

    @classmethod
    def from_dict(cls, data: dict) -> "ChainDefinition":
        return cls(
            name=data.get("name", ""),
            steps=[ChainStep.from_dict(s) for s in data.get("steps") or []],
            description=data.get("description") or "",
            collection=data.get("collection"),
            stop_on_error=_as_bool(data.get("stop_on_error"), default=True),
        )


class ChainRunner:
    """Runs chain steps one at a time against injected collaborators.

    request_store   anything with ``get_request_by_name(name)``
    http_executor   ``(method, url, headers, body, auth) -> RequestResult``;
                    defaults to nurl.executor.execute_request
    """

    def __init__(
        self,
        request_store=None,
        http_executor: Callable | None = None,
        credential_store: CredentialStore | None = None,
        global_vars: Mapping[str, Any] | None = None,
        env_vars: Mapping[str, Any] | None = None,
        default_headers: Mapping[str, str] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.request_store = request_store
        self.http_executor = http_executor
        self.credential_store = credential_store or CredentialStore()
        self.global_vars = dict(global_vars or {})
        self.env_vars = dict(env_vars or {})
        self.default_headers = dict(default_headers or {})
        self.sleep = sleep

    def run(self, steps: list[ChainStep | dict], stop_on_error: bool = True) -> ChainResult:
        context: dict[str, Any] = {}
        result = ChainResult(success=True, results=[], context=context)

        for index, step in enumerate(steps, start=1):
            if isinstance(step, dict):
                step = ChainStep.from_dict(step)
            outcome = self._run_step(index, step, context, stop_on_error)
            result.results.append(outcome)

            if outcome.state is StepState.ABORTED:
                logger.warning(
                    "Chain aborted at step %d (%s): %s",
                    index,
                    outcome.request,
                    outcome.error,
                )
                result.success = False
                break
            if outcome.state is StepState.COMPLETED and step.delay_ms > 0:
                logger.debug("Waiting %dms after step %d", step.delay_ms, index)
                self.sleep(step.delay_ms / 1000)

        return result

    def _resolve_request(self, step: ChainStep) -> RequestDefinition:
        if step.request:
            if self.request_store is None:
                raise RequestNotFound(step.request)
            saved = self.request_store.get_request_by_name(step.request)
            if not step.inline:
                return saved
            merged = saved.to_dict()
            merged.update(step.inline)
            return RequestDefinition.from_dict(merged, collection=saved.collection)
        return RequestDefinition.from_dict(step.inline, name=step.identity)

    def _failure(self, index, step, kind, message, stop_on_error) -> StepOutcome:
        state = StepState.ABORTED if stop_on_error else StepState.FAILED
        logger.info("Step %d (%s) failed: %s", index, step.identity, message)
        return StepOutcome(
            index=index,
            request=step.identity,
            state=state,
            error_kind=kind,
            error=message,
        )

    def _run_step(
        self,
        index: int,
        step: ChainStep,
        context: dict[str, Any],
        stop_on_error: bool,
    ) -> StepOutcome:
        try:
            request = self._resolve_request(step)
        except RequestNotFound as e:
            return self._failure(index, step, ErrorKind.REQUEST_NOT_FOUND, str(e), stop_on_error)

        scope = resolve_scope(self.global_vars, self.env_vars, context, step.use)
        url = interpolate_string(request.url, scope)
        headers = interpolate_structure({**self.default_headers, **request.headers}, scope)
        body = interpolate_structure(request.body, scope)
        auth = self.credential_store.resolve_auth(interpolate_structure(request.auth, scope))

        logger.debug("Step %d: %s %s", index, request.method, url)
        http_executor = self.http_executor or executor.execute_request
        try:
            response = http_executor(
                method=request.method,
                url=url,
                headers=headers,
                body=body,
                auth=auth,
            )
        except TransportError as e:
            return self._failure(index, step, ErrorKind.TRANSPORT_FAILURE, str(e), stop_on_error)
        if response.error:
            return self._failure(
                index,
                step,
                ErrorKind.TRANSPORT_FAILURE,
                response.error,
                stop_on_error,
            )

        snapshot = response.snapshot()
        outcome = StepOutcome(
            index=index,
            request=step.identity,
            state=StepState.COMPLETED,
            status=response.status_code,
            time_ms=response.elapsed_ms,
            response=snapshot,
            url=url,
        )

        if stop_on_error and response.status_code >= 400:
            outcome.state = StepState.ABORTED
            outcome.error_kind = ErrorKind.HTTP_ERROR_STATUS
            outcome.error = f"HTTP {response.status_code} {response.reason}".rstrip()
            return outcome

        extract = {**request.extract, **step.extract}
        for key, path in extract.items():
            value = extract_by_path(snapshot, path)
            if value is None:
                logger.debug("Step %d: nothing at %r for %r", index, path, key)
                continue
            context[key] = value

        return outcome


def run_chain(
    steps: list[ChainStep | dict],
    stop_on_error: bool = True,
    **collaborators,
) -> ChainResult:
    """Run steps with a fresh ChainRunner; see ChainRunner for collaborators."""
    return ChainRunner(**collaborators).run(steps, stop_on_error)
