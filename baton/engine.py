"""
JobEngine - run one call of a staged job.

The engine implements:
- Hydrating the job's state from the Backend (a fresh job with no record
  starts from the submitted token)
- Start handler dispatch and default stage selection
- The per-call stage loop bounded by iterations_per_call
- End handler dispatch on completion
- Mapping handler outcomes onto the token (done, abort, failure)
- Persisting the token, or deleting the record on completion

Execution flow for one call:
1. Terminal tokens are returned unchanged; nothing runs
2. Fresh tokens (no stage yet) run `start` once, then default to the
   first declared stage unless start selected one
3. The current stage runs up to iterations_per_call times (0 = until
   done, abort, failure, or a stage switch)
4. `end` runs once if the job completed during this call
5. Completed jobs are deleted from the backend; everything else is saved

Handler outcomes are values (Outcome) inside the engine. run_job() is the
entry point that turns a FAILURE back into an exception after the
aborted token has been persisted.
"""

import logging
import time
from contextlib import ExitStack
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, ContextManager, Optional, Union

from baton import blobs
from baton.backend import Backend, get_backend
from baton.config import BatonConfig
from baton.errors import ConfigError, HandlerFailure, JobAborted, JobNotFoundError, StorageError
from baton.stages import Handler, StageDeclarations, StageRegistry
from baton.token import Token
from baton.utils import describe_exception, format_duration

logger = logging.getLogger(__name__)

START = "start"
END = "end"


class Outcome(str, Enum):
    """What a handler invocation (or a whole call) left the job in."""
    CONTINUE = "continue"
    DONE = "done"
    ABORT = "abort"
    FAILURE = "failure"


@dataclass
class HandlerResult:
    """Result of invoking one handler once."""
    outcome: Outcome
    value: Any = None
    error: Optional[Exception] = None


@dataclass
class CallResult:
    """
    Result of one entry-point call.

    Attributes:
        token: The token to hand back to the client
        outcome: CONTINUE, DONE, ABORT, or FAILURE
        value: Return value of the last handler that ran (not persisted)
        error: The handler exception when outcome is FAILURE
        iterations: Stage executions performed during this call
        handlers: Names of the handlers that ran, in order
    """
    token: Token
    outcome: Outcome
    value: Any = None
    error: Optional[Exception] = None
    iterations: int = 0
    handlers: list[str] = field(default_factory=list)

    @property
    def failed(self) -> bool:
        return self.outcome is Outcome.FAILURE

    def raise_for_failure(self) -> None:
        """Re-raise a handler failure as HandlerFailure, chained to the original."""
        if self.error is None:
            return
        message = self.token.error or describe_exception(self.error)
        raise HandlerFailure(message, token=self.token, result=self) from self.error

    def raise_for_abort(self) -> None:
        """Raise JobAborted if a handler aborted the job explicitly."""
        if self.outcome is Outcome.ABORT:
            raise JobAborted(self.token.error or "", token=self.token)


class JobContext:
    """
    What handlers receive.

    Gives handlers access to the job's data (blob storage is routed
    transparently), the control mutators, and resources scoped to the
    current call. Resources registered through enter_context() or
    callback() are released when the call ends, whatever its outcome.
    """

    def __init__(
        self,
        token: Token,
        backend: Backend,
        registry: StageRegistry,
        config: BatonConfig,
        resources: ExitStack,
    ):
        self._token = token
        self._backend = backend
        self._registry = registry
        self._config = config
        self._resources = resources
        self.handler: Optional[str] = None
        self.iteration = 0
        # Blob keys dropped this call; their bytes are removed once the call is saved.
        self.released: set[str] = set()

    @property
    def token(self) -> Token:
        return self._token

    @property
    def job_id(self) -> str:
        return self._token.id

    @property
    def stage_name(self) -> str:
        return self._token.stage_name

    @property
    def iterations_per_call(self) -> int:
        return self._token.iterations_per_call

    # -- data ---------------------------------------------------------------

    def __contains__(self, key: object) -> bool:
        return key in self._token.data

    def keys(self) -> list[str]:
        return list(self._token.data)

    def fetch(self, key: str, default: Any = None) -> Any:
        """Fetch a value by key, reading blob storage when the key is out-of-line."""
        if key in self._token.blob_keys:
            ref = self._token.data[key]
            payload = self._backend.fetch_blob(self.job_id, key)
            return blobs.decode(payload, ref.get("encoding"))
        return self._token.data.get(key, default)

    def store(self, key: str, value: Any) -> None:
        """
        Store a value by key.

        Bytes, and text larger than auto_blob_threshold, go to blob storage;
        everything else is kept inline in the token.
        """
        self._check_key(key)
        if blobs.should_blob(value, self._config.auto_blob_threshold):
            self._put_blob(key, value)
            return
        self._release_blob(key)
        self._token.data[key] = value

    def delete(self, key: str) -> None:
        """Forget a key and any blob stored for it."""
        self._release_blob(key)
        self._token.data.pop(key, None)

    def store_blob(self, key: str, data: Union[bytes, str]) -> None:
        """Store a value out-of-line regardless of its size."""
        self._check_key(key)
        self._put_blob(key, data)

    def fetch_blob(self, key: str) -> bytes:
        """Fetch the raw bytes stored out-of-line for key."""
        return self._backend.fetch_blob(self.job_id, key)

    def _put_blob(self, key: str, value: Any) -> None:
        payload, encoding = blobs.encode(value)
        self._backend.store_blob(self.job_id, key, payload)
        self._token.data[key] = blobs.make_ref(key, len(payload), encoding)
        self._token.blob_keys.add(key)
        self.released.discard(key)

    def _release_blob(self, key: str) -> None:
        if key in self._token.blob_keys:
            self._token.blob_keys.discard(key)
            self.released.add(key)

    @staticmethod
    def _check_key(key: str) -> None:
        if not isinstance(key, str) or not key:
            raise ValueError(f"Data key must be a non-empty string, got {key!r}")

    # -- control ------------------------------------------------------------

    def select_stage(self, name: str) -> None:
        """
        Choose the stage the job runs next.

        Switching stages ends the current call's stage loop; the new stage
        starts fresh on the next call.
        """
        self._registry.resolve(name)
        self._token.select_stage(name)

    def mark_done(self) -> None:
        """Mark the job complete. The end handler runs after the stage loop."""
        self._token.mark_done()

    def abort(self, message: str) -> None:
        """Terminate the job. No further iterations run and end is skipped."""
        self._token.set_abort(str(message))

    # -- resources ----------------------------------------------------------

    def enter_context(self, cm: ContextManager) -> Any:
        """Enter a context manager that is exited when this call ends."""
        return self._resources.enter_context(cm)

    def callback(self, fn: Callable, *args, **kwargs) -> None:
        """Register a cleanup function that runs when this call ends."""
        self._resources.callback(fn, *args, **kwargs)


class JobEngine:
    """
    Executes one call of a staged job against a backend.

    The engine owns the working copy of the token for the duration of the
    call and performs no locking: at most one call per job id may be in
    flight at any time.
    """

    def __init__(
        self,
        backend: Backend,
        registry: StageRegistry,
        config: Optional[BatonConfig] = None,
        scope: Optional[Callable[[JobContext], ContextManager]] = None,
    ):
        """
        Initialize the engine.

        Args:
            backend: Persistence for token state and blobs
            registry: Stages declared for this call
            config: Settings; defaults to the backend's config
            scope: Optional factory for a context manager wrapped around
                   the handler section of every call
        """
        registry.validate()
        self.backend = backend
        self.registry = registry
        self.config = config or getattr(backend, "config", None) or BatonConfig()
        self.scope = scope

    def execute(self, token: Token) -> CallResult:
        """
        Run one call for token.

        Returns:
            CallResult; handler exceptions are reported as Outcome.FAILURE

        Raises:
            JobNotFoundError: A started token has no persisted record
            StaleStageError: The token's stage is not declared for this call
            StorageError: The backend failed; this call is not committed
        """
        if token.is_terminal:
            logger.info(
                f"Job {token.id} is already {token.status}; nothing to run",
                extra={"event": "job_terminal", "job_id": token.id, "stage": token.stage_name},
            )
            return self._terminal_result(token)

        working = self._hydrate(token)
        if working.is_terminal:
            return self._terminal_result(working)

        start_time = time.time()
        logger.info(
            f"Starting call for job {working.id}",
            extra={
                "event": "call_started",
                "job_id": working.id,
                "stage": working.stage_name or None,
                "metadata": {
                    "iteration_count": working.iteration_count,
                    "iterations_per_call": working.iterations_per_call,
                },
            },
        )

        with ExitStack() as resources:
            ctx = JobContext(working, self.backend, self.registry, self.config, resources)
            if self.scope is not None:
                resources.enter_context(self.scope(ctx))
            result = self._run(ctx, working)

        self._persist(working)
        if not working.done:
            self._reclaim_blobs(working, ctx.released)

        result.outcome = self._final_outcome(result)
        self._log_finished(result, time.time() - start_time)
        return result

    def _hydrate(self, token: Token) -> Token:
        """
        Build the working copy from the backend.

        A fresh token with no record is taken as submitted. A fresh token
        whose job already has a record (a retried first call) resumes from
        that record like any started token.
        """
        try:
            working = self.backend.load(token.id)
        except JobNotFoundError:
            if token.is_fresh:
                return token.copy()
            raise

        # Persisted state is authoritative; the client only tunes the budget.
        working.iterations_per_call = token.iterations_per_call
        if not working.is_terminal and working.stage_name:
            self.registry.resolve(working.stage_name)
        return working

    def _reclaim_blobs(self, working: Token, released: set[str]) -> None:
        """Remove bytes of blobs dropped during a call that has been saved."""
        for key in sorted(released - working.blob_keys):
            try:
                self.backend.delete_blob(working.id, key)
            except StorageError as e:
                # The record no longer refers to the blob; cleanup reclaims it with the job.
                logger.warning(
                    f"Could not remove blob {key} of job {working.id}: {e}",
                    extra={"event": "blob_reclaim_failed", "job_id": working.id},
                )

    def _terminal_result(self, token: Token) -> CallResult:
        outcome = Outcome.DONE if token.done else Outcome.ABORT
        return CallResult(token=token, outcome=outcome)

    def _run(self, ctx: JobContext, working: Token) -> CallResult:
        result = CallResult(token=working, outcome=Outcome.CONTINUE)
        budget = working.iterations_per_call

        if not working.stage_name:
            if self.registry.start is not None:
                self._record(result, START, self._invoke(ctx, START, self.registry.start))
            if not working.is_terminal and not working.stage_name:
                working.select_stage(self.registry.first)

        if not working.is_terminal:
            stage = working.stage_name
            handler = self.registry.resolve(stage)
            while budget == 0 or result.iterations < budget:
                ctx.iteration = result.iterations
                handler_result = self._invoke(ctx, stage, handler)
                if result.iterations == 0:
                    result.handlers.append(stage)
                result.value = handler_result.value
                if handler_result.outcome is Outcome.FAILURE:
                    result.error = handler_result.error
                    break
                result.iterations += 1
                working.iteration_count += 1
                if working.is_terminal or working.stage_name != stage:
                    break

        if working.done and self.registry.end is not None:
            self._record(result, END, self._invoke(ctx, END, self.registry.end))

        return result

    def _record(self, result: CallResult, name: str, handler_result: HandlerResult) -> None:
        result.handlers.append(name)
        result.value = handler_result.value
        if handler_result.outcome is Outcome.FAILURE:
            result.error = handler_result.error

    def _invoke(self, ctx: JobContext, name: str, handler: Handler) -> HandlerResult:
        """Call one handler and classify what it did to the token."""
        token = ctx.token
        ctx.handler = name
        try:
            value = handler(ctx)
        except StorageError:
            raise
        except Exception as e:
            message = describe_exception(e)
            logger.error(
                f"Handler '{name}' failed for job {token.id}: {message}",
                extra={"event": "handler_failed", "job_id": token.id, "stage": name},
                exc_info=True,
            )
            # A failure wins over a completion recorded earlier in the call.
            token.done = False
            token.set_abort(message)
            return HandlerResult(Outcome.FAILURE, error=e)

        if token.done:
            return HandlerResult(Outcome.DONE, value)
        if token.abort:
            logger.warning(
                f"Job {token.id} aborted in '{name}': {token.error}",
                extra={"event": "job_aborted", "job_id": token.id, "stage": name},
            )
            return HandlerResult(Outcome.ABORT, value)
        return HandlerResult(Outcome.CONTINUE, value)

    def _persist(self, working: Token) -> None:
        if working.done:
            self.backend.delete(working.id)
        else:
            self.backend.save(working)

    @staticmethod
    def _final_outcome(result: CallResult) -> Outcome:
        if result.error is not None:
            return Outcome.FAILURE
        if result.token.done:
            return Outcome.DONE
        if result.token.abort:
            return Outcome.ABORT
        return Outcome.CONTINUE

    def _log_finished(self, result: CallResult, duration: float) -> None:
        token = result.token
        logger.info(
            f"Call for job {token.id} finished: {result.outcome.value} "
            f"({result.iterations} iterations, {format_duration(duration)})",
            extra={
                "event": "call_finished",
                "job_id": token.id,
                "stage": token.stage_name or None,
                "metadata": {
                    "outcome": result.outcome.value,
                    "iterations": result.iterations,
                    "iteration_count": token.iteration_count,
                    "handlers": result.handlers,
                    "duration_seconds": duration,
                },
            },
        )


def run_job(
    token: Union[Token, dict[str, Any]],
    stages: Union[StageRegistry, StageDeclarations],
    backend: Optional[Backend] = None,
    start: Optional[Handler] = None,
    end: Optional[Handler] = None,
    config: Optional[BatonConfig] = None,
    scope: Optional[Callable[[JobContext], ContextManager]] = None,
    raise_on_abort: bool = False,
) -> CallResult:
    """
    Entry point for one call of a staged job.

    Args:
        token: The token submitted by the client (Token or its wire form)
        stages: A StageRegistry, or ordered (name, handler) declarations
        backend: Persistence; defaults to the backend selected by config
        start: Start handler (only with plain declarations)
        end: End handler (only with plain declarations)
        config: Settings; defaults to the backend's config
        scope: Optional context manager factory wrapped around each call
        raise_on_abort: Also raise JobAborted when the job is (or already
            was) aborted by handler code

    Returns:
        CallResult carrying the token to return to the client and the
        last handler's return value

    Raises:
        HandlerFailure: A handler raised. The aborted token is already
            persisted and is available as `exc.token`.
        JobAborted: Only with raise_on_abort; the aborted token is
            available as `exc.token`.
        JobNotFoundError: A started token has no persisted record
        StaleStageError: The token's stage is not declared
        StorageError: The backend failed
    """
    if isinstance(token, dict):
        token = Token.from_dict(token)

    if isinstance(stages, StageRegistry):
        if start is not None or end is not None:
            raise ConfigError("Pass start/end handlers on the StageRegistry, not to run_job()")
        registry = stages
    else:
        registry = StageRegistry(stages, start=start, end=end)

    if backend is None:
        backend = get_backend(config)

    result = JobEngine(backend, registry, config=config, scope=scope).execute(token)
    result.raise_for_failure()
    if raise_on_abort:
        result.raise_for_abort()
    return result
