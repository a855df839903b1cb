import asyncio
import logging
import random
import typing

from chainplan.constants import (
    DEFAULT_CONCURRENCY,
    DEFAULT_CONFIRMATIONS,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_STEP_TIMEOUT,
)
from chainplan.errors import (
    InvalidPlanError,
    LedgerConsistencyError,
    PlanError,
    RetriesExhaustedError,
    StepChangedError,
    StepTimeoutError,
    TransientExecutionError,
    VerificationError,
)
from chainplan.executor import ChainExecutor, Verifier
from chainplan.graph import StepGraph
from chainplan.ledger import RunLedger
from chainplan.models import ChainId, Step, StepKind, StepResult, StepStatus
from chainplan.params import Resolver
from chainplan.retry import BackoffPolicy, classify_error
from chainplan.steps import STEP_HANDLERS, StepContext, StepOutcome
from chainplan.summary import RunSummary

logger = logging.getLogger(__name__)

# steps whose artifact address is immutable once recorded
UNFORCEABLE_KINDS = (StepKind.DEPLOY, StepKind.DEPLOY_PROXY)


class RunOptions(typing.NamedTuple):
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    concurrency: int = DEFAULT_CONCURRENCY
    confirmations: int = DEFAULT_CONFIRMATIONS
    step_timeout: typing.Optional[float] = DEFAULT_STEP_TIMEOUT
    continue_on_error: bool = False
    backoff: BackoffPolicy = BackoffPolicy()
    force: typing.FrozenSet[str] = frozenset()

    def validate(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        if self.confirmations < 1:
            raise ValueError("confirmations must be >= 1")
        if self.step_timeout is not None and self.step_timeout <= 0:
            raise ValueError("step_timeout must be > 0")
        self.backoff.validate()


class CancelToken:
    """Cooperative cancellation: stops new steps from starting."""

    def __init__(self):
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled


class Orchestrator:
    """
    Executes a step graph on one chain, recording every attempt in the ledger.

    Steps start only once all of their dependencies have a recorded success.
    Ready steps run concurrently up to ``options.concurrency``; transactions are
    submitted one at a time for the single signer. Transient failures are
    retried with exponential backoff, permanent ones halt the run unless
    ``options.continue_on_error`` is set, in which case only the failed step's
    dependents are skipped.
    """

    def __init__(
        self,
        executor: ChainExecutor,
        verifier: typing.Optional[Verifier],
        ledger: RunLedger,
        options: typing.Optional[RunOptions] = None,
        sleep: typing.Callable[[float], typing.Awaitable[typing.Any]] = asyncio.sleep,
        cancel_token: typing.Optional[CancelToken] = None,
        rng: typing.Optional[random.Random] = None,
    ):
        self.executor = executor
        self.verifier = verifier
        self.ledger = ledger
        self.options = options or RunOptions()
        self.options.validate()
        self.sleep = sleep
        self.cancel_token = cancel_token or CancelToken()
        self.rng = rng or random.Random()

        self._signer_lock: typing.Optional[asyncio.Lock] = None
        self._contexts: typing.Dict[typing.Tuple[ChainId, str], StepContext] = dict()
        self._resolvers: typing.Dict[ChainId, Resolver] = dict()
        self._external: typing.Dict[str, typing.Optional[str]] = dict()
        self._constants: typing.Dict[str, typing.Any] = dict()
        self._attempts: typing.Dict[str, int] = dict()
        self._graph: typing.Optional[StepGraph] = None
        self._halted = False

    #
    # Run
    #

    def _apply_force(self, graph: StepGraph, chain_id: ChainId) -> None:
        for step_id in sorted(self.options.force):
            if step_id not in graph:
                raise InvalidPlanError(f"Cannot force unknown step '{step_id}'.")
            step = graph.get(step_id)
            if step.kind in UNFORCEABLE_KINDS:
                raise InvalidPlanError(
                    f"Cannot force '{step_id}': re-running a {step.kind.value} step would "
                    "replace the recorded address of its artifact."
                )
            if self.ledger.success_for(chain_id, step_id):
                self.ledger.invalidate(chain_id, step_id, reason="forced re-execution")

    def _seed(self, graph: StepGraph, chain_id: ChainId, summary: RunSummary) -> typing.Set[str]:
        state = self.ledger.seed(chain_id)
        satisfied = set()
        for step in graph:
            result = state.succeeded.get(step.id)
            if result is None:
                continue
            if result.idempotency_key and result.idempotency_key != step.idempotency_key:
                raise StepChangedError(step.id)
            satisfied.add(step.id)
            summary.cached(result)
        if satisfied:
            logger.info(
                "Chain %d: %d of %d steps already recorded as successful",
                chain_id,
                len(satisfied),
                len(graph),
            )
        return satisfied

    async def run(
        self,
        graph: StepGraph,
        chain_id: ChainId,
        external: typing.Optional[typing.Dict[str, typing.Optional[str]]] = None,
        constants: typing.Optional[typing.Dict[str, typing.Any]] = None,
    ) -> RunSummary:
        self._external = dict(external or dict())
        self._constants = dict(constants or dict())
        self._graph = graph
        self._signer_lock = asyncio.Lock()
        self._contexts.clear()
        self._resolvers.clear()
        self._attempts.clear()
        self._halted = False

        self._apply_force(graph, chain_id)
        summary = RunSummary(chain_id, graph.steps)
        satisfied = self._seed(graph, chain_id, summary)
        settled = set(satisfied)

        semaphore = asyncio.Semaphore(self.options.concurrency)
        running: typing.Dict[asyncio.Future, Step] = dict()

        while True:
            if not self._stopping():
                scheduled = settled | {step.id for step in running.values()}
                for step in graph.ready_batch(satisfied, scheduled):
                    task = asyncio.ensure_future(self._run_step(step, chain_id, semaphore))
                    running[task] = step
            if not running:
                break

            done, _ = await asyncio.wait(running, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                step = running.pop(task)
                try:
                    result = task.result()
                except Exception:
                    await self._abort(running)
                    raise
                settled.add(step.id)
                if result is None:
                    continue  # halted before it started
                self._settle(graph, step, result, summary, satisfied, settled)

        summary.cancelled = self.cancel_token.cancelled
        return summary

    def _stopping(self) -> bool:
        return self._halted or self.cancel_token.cancelled

    async def _abort(self, running: typing.Dict[asyncio.Future, Step]) -> None:
        for task in running:
            task.cancel()
        await asyncio.gather(*running, return_exceptions=True)
        running.clear()

    def _settle(
        self,
        graph: StepGraph,
        step: Step,
        result: StepResult,
        summary: RunSummary,
        satisfied: typing.Set[str],
        settled: typing.Set[str],
    ) -> None:
        attempts = self._attempts.get(step.id, 0)
        if result.succeeded:
            satisfied.add(step.id)
            summary.succeeded(result, attempts)
            return

        if result.error_kind == VerificationError.kind:
            logger.warning("%s: verification failed: %s", step.id, result.error)
            satisfied.add(step.id)
            summary.warning(result, attempts)
            return

        summary.failed(result, attempts)
        if result.status is not StepStatus.PERMANENT_FAILURE:
            return  # interrupted by cancellation

        logger.error("%s failed: %s", step.id, result.error)
        if self._halts(step, result):
            logger.error("Halting: no new steps will start.")
            return
        for dependent in graph.dependents_of(step.id):
            if dependent.id not in settled:
                settled.add(dependent.id)
                summary.skipped(dependent.id, cause=step.id)
                logger.warning("Skipping %s: depends on failed step %s", dependent.id, step.id)

    async def _run_step(
        self, step: Step, chain_id: ChainId, semaphore: asyncio.Semaphore
    ) -> typing.Optional[StepResult]:
        async with semaphore:
            if self._stopping():
                return None
            result = await self.execute_step(step, chain_id)
            # decided before the slot is released so that no queued step starts after a halt
            if self._halts(step, result):
                self._halted = True
            return result

    def _halts(self, step: Step, result: StepResult) -> bool:
        if result.status is not StepStatus.PERMANENT_FAILURE:
            return False
        if result.error_kind == VerificationError.kind:
            return False
        return step.critical or not self.options.continue_on_error

    #
    # Steps
    #

    def _resolver(self, chain_id: ChainId) -> Resolver:
        if chain_id not in self._resolvers:
            self._resolvers[chain_id] = Resolver(
                chain_id=chain_id,
                ledger=self.ledger,
                executor=self.executor,
                external=self._external,
            )
        return self._resolvers[chain_id]

    def _artifact_producers(self, step: Step) -> typing.Dict[str, str]:
        if self._graph is None or step.id not in self._graph:
            return dict()
        return self._graph.artifact_producers(step.id)

    def _context(self, step: Step, chain_id: ChainId) -> StepContext:
        key = (chain_id, step.id)
        if key not in self._contexts:
            if self._signer_lock is None:
                self._signer_lock = asyncio.Lock()
            self._contexts[key] = StepContext(
                step=step,
                chain_id=chain_id,
                executor=self.executor,
                verifier=self.verifier,
                resolver=self._resolver(chain_id).pinned(self._artifact_producers(step)),
                signer_lock=self._signer_lock,
                confirmations=self.options.confirmations,
                constants=self._constants,
                recorded=self.ledger.pending_submissions(
                    chain_id, step.id, idempotency_key=step.idempotency_key
                ),
                on_submit=lambda submission: self.ledger.record_submission(
                    chain_id, step.id, submission, idempotency_key=step.idempotency_key
                ),
            )
        return self._contexts[key]

    async def _attempt(self, context: StepContext) -> StepOutcome:
        handler = STEP_HANDLERS[context.step.kind]
        if self.options.step_timeout is None:
            return await handler(context)
        try:
            return await asyncio.wait_for(handler(context), timeout=self.options.step_timeout)
        except asyncio.TimeoutError:
            raise StepTimeoutError(
                f"Step '{context.step.id}' exceeded its {self.options.step_timeout}s timeout"
            )

    def _record(
        self,
        chain_id: ChainId,
        step: Step,
        attempt: int,
        status: StepStatus,
        context: StepContext,
        outcome: typing.Optional[StepOutcome] = None,
        error: typing.Optional[BaseException] = None,
    ) -> StepResult:
        submissions = tuple(context.submissions.values())
        tx_hash = outcome.tx_hash if outcome else getattr(error, "tx_hash", None)
        if tx_hash is None and submissions:
            tx_hash = submissions[-1].tx_hash
        result = StepResult(
            chain_id=chain_id,
            step_id=step.id,
            attempt=attempt,
            status=status,
            artifact=outcome.artifact if outcome else None,
            error_kind=getattr(error, "kind", type(error).__name__) if error else None,
            error=str(error) if error else None,
            tx_hash=tx_hash,
            submissions=submissions,
            idempotency_key=step.idempotency_key,
        )
        return self.ledger.record_result(chain_id, result)

    def _fail(
        self,
        chain_id: ChainId,
        step: Step,
        attempt: int,
        context: StepContext,
        error: BaseException,
    ) -> StepResult:
        """Records a final failure. Verification never fails harder than a warning."""
        if step.kind is StepKind.VERIFY and not isinstance(error, VerificationError):
            error = VerificationError(f"{type(error).__name__}: {error}")
        return self._record(
            chain_id, step, attempt, StepStatus.PERMANENT_FAILURE, context, error=error
        )

    async def execute_step(self, step: Step, chain_id: ChainId) -> StepResult:
        """
        Executes a step until it succeeds or fails permanently.
        A step with a recorded success is returned from the ledger untouched.
        """
        cached = self.ledger.success_for(chain_id, step.id)
        if cached is not None:
            return cached

        context = self._context(step, chain_id)
        attempt = self.ledger.last_attempt(chain_id, step.id)
        delays = self.options.backoff.delays(self.rng)
        tries = 0
        logger.info("%s: starting %s", step.id, step.kind.value)

        while True:
            attempt += 1
            tries += 1
            self._attempts[step.id] = tries
            try:
                outcome = await self._attempt(context)
            except (PlanError, LedgerConsistencyError):
                raise
            except VerificationError as e:
                return self._fail(chain_id, step, attempt, context, e)
            except Exception as e:
                error = classify_error(e)
                if not isinstance(error, TransientExecutionError):
                    return self._fail(chain_id, step, attempt, context, error)
                if tries >= self.options.max_attempts:
                    exhausted = RetriesExhaustedError(
                        f"Gave up after {tries} attempts: {error}", tx_hash=error.tx_hash
                    )
                    return self._fail(chain_id, step, attempt, context, exhausted)

                result = self._record(
                    chain_id, step, attempt, StepStatus.TRANSIENT_FAILURE, context, error=error
                )
                if self.cancel_token.cancelled:
                    logger.warning("%s: not retrying, run was cancelled", step.id)
                    return result
                delay = next(delays)
                logger.warning(
                    "%s: attempt %d failed (%s); retrying in %.1fs", step.id, tries, error, delay
                )
                await self.sleep(delay)
                continue

            result = self._record(chain_id, step, attempt, StepStatus.SUCCESS, context, outcome)
            if result.artifact:
                logger.info("%s: %s at %s", step.id, result.artifact.name, result.artifact.address)
            else:
                logger.info("%s: done", step.id)
            return result

