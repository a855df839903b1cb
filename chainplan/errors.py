import typing


class ChainPlanError(Exception):
    """Base class for all orchestration errors."""


#
# Execution
#


class ExecutionError(ChainPlanError):
    """Raised when a step could not be executed against the chain."""

    kind = "ExecutionError"

    def __init__(self, message: str, tx_hash: typing.Optional[str] = None):
        super().__init__(message)
        self.tx_hash = tx_hash


class TransientExecutionError(ExecutionError):
    """Retryable: RPC timeouts, rate limits, nonce races, underpriced transactions."""

    kind = "TransientExecutionError"


class StepTimeoutError(TransientExecutionError):
    """The step exceeded its wall-clock timeout; the transaction may still land."""

    kind = "StepTimeoutError"


class PermanentExecutionError(ExecutionError):
    """Not retryable: reverts, invalid arguments, insufficient funds."""

    kind = "PermanentExecutionError"


class RetriesExhaustedError(PermanentExecutionError):
    """A transient failure that kept recurring until the attempt budget ran out."""

    kind = "RetriesExhaustedError"


class VerificationError(ChainPlanError):
    """Source verification failed. Never fatal to the deployment outcome."""

    kind = "VerificationError"


#
# Plan
#


class PlanError(ChainPlanError):
    """The deployment plan is malformed. Raised before any network call."""


class InvalidPlanError(PlanError):
    pass


class DuplicateStepError(PlanError):
    def __init__(self, step_id: str):
        super().__init__(f"Step '{step_id}' is declared more than once.")
        self.step_id = step_id


class UnknownDependencyError(PlanError):
    def __init__(self, step_id: str, dependency: str):
        super().__init__(
            f"Step '{step_id}' depends on '{dependency}', which is neither a step, "
            f"an artifact produced by a step, nor an external artifact."
        )
        self.step_id = step_id
        self.dependency = dependency


class CycleDetectedError(PlanError):
    def __init__(self, step_ids: typing.Sequence[str]):
        super().__init__(f"Dependency cycle detected between steps: {', '.join(step_ids)}")
        self.step_ids = list(step_ids)


class StepChangedError(PlanError):
    """A step recorded as successful no longer matches its declaration."""

    def __init__(self, step_id: str):
        super().__init__(
            f"Step '{step_id}' was recorded as successful with different parameters. "
            "Give the changed step a new id or force it."
        )
        self.step_id = step_id


#
# Ledger
#


class LedgerConsistencyError(ChainPlanError):
    """The ledger is inconsistent. Fatal: the run halts."""


class DuplicateSuccessError(LedgerConsistencyError):
    def __init__(self, chain_id: int, step_id: str):
        super().__init__(f"Step '{step_id}' already has a recorded success on chain {chain_id}.")
        self.chain_id = chain_id
        self.step_id = step_id


class ArtifactConflictError(LedgerConsistencyError):
    pass


class CorruptLedgerError(LedgerConsistencyError):
    pass


class ArtifactNotFound(ChainPlanError, KeyError):
    def __init__(self, chain_id: int, name: str):
        super().__init__(f"No artifact named '{name}' is recorded for chain {chain_id}.")
        self.chain_id = chain_id
        self.name = name

    def __str__(self):
        return self.args[0]
