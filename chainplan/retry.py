import asyncio
import random
import re
import typing

from chainplan.constants import (
    DEFAULT_BACKOFF_BASE,
    DEFAULT_BACKOFF_FACTOR,
    DEFAULT_BACKOFF_JITTER,
    DEFAULT_BACKOFF_MAX,
)
from chainplan.errors import (
    ExecutionError,
    PermanentExecutionError,
    TransientExecutionError,
)

# Message fragments (lower case) reported by RPC providers and explorers.
TRANSIENT_MARKERS = (
    "timeout",
    "timed out",
    "rate limit",
    "too many requests",
    "nonce too low",
    "nonce too high",
    "replacement transaction underpriced",
    "transaction underpriced",
    "already known",
    "connection reset",
    "connection refused",
    "temporarily unavailable",
    "header not found",
)

PERMANENT_MARKERS = (
    "execution reverted",
    "revert",
    "insufficient funds",
    "invalid argument",
    "invalid constructor",
    "out of gas",
    "gas required exceeds allowance",
)

# HTTP statuses worth retrying, matched as whole numbers so addresses and hashes never match
TRANSIENT_STATUS_CODES = frozenset({429, 502, 503, 504})
TRANSIENT_STATUS_PATTERN = re.compile(r"\b(?:429|502|503|504)\b")


def _http_status(error: BaseException) -> typing.Optional[int]:
    """Status code carried by an HTTP client error, if any."""
    status = getattr(error, "status", None) or getattr(error, "status_code", None)
    response = getattr(error, "response", None)
    if status is None and response is not None:
        status = getattr(response, "status_code", None) or getattr(response, "status", None)
    return status if isinstance(status, int) else None


def classify_error(error: BaseException) -> ExecutionError:
    """Maps an arbitrary executor exception onto the execution error taxonomy."""
    if isinstance(error, ExecutionError):
        return error
    if isinstance(error, (asyncio.TimeoutError, TimeoutError, ConnectionError)):
        return TransientExecutionError(f"{type(error).__name__}: {error}")

    message = str(error) or type(error).__name__
    if _http_status(error) in TRANSIENT_STATUS_CODES:
        return TransientExecutionError(message)
    lowered = message.lower()
    if any(marker in lowered for marker in PERMANENT_MARKERS):
        return PermanentExecutionError(message)
    if any(marker in lowered for marker in TRANSIENT_MARKERS):
        return TransientExecutionError(message)
    if TRANSIENT_STATUS_PATTERN.search(message):
        return TransientExecutionError(message)
    return PermanentExecutionError(message)


class BackoffPolicy(typing.NamedTuple):
    """Exponential backoff with a cap and proportional jitter."""

    base: float = DEFAULT_BACKOFF_BASE
    factor: float = DEFAULT_BACKOFF_FACTOR
    maximum: float = DEFAULT_BACKOFF_MAX
    jitter: float = DEFAULT_BACKOFF_JITTER

    def validate(self) -> None:
        if self.base < 0 or self.maximum < 0:
            raise ValueError("backoff delays must be >= 0")
        if self.factor < 1:
            raise ValueError("backoff factor must be >= 1")
        if self.jitter < 0:
            raise ValueError("backoff jitter must be >= 0")

    def delays(self, rng: typing.Optional[random.Random] = None) -> typing.Iterator[float]:
        """
        Yields the delay before each retry. Delays never decrease and never
        exceed the cap, jitter included.
        """
        rng = rng or random.Random()
        previous = 0.0
        retry = 0
        while True:
            delay = self.base * (self.factor**retry)
            if self.jitter:
                delay += rng.uniform(0.0, delay * self.jitter)
            delay = min(self.maximum, max(previous, delay))
            previous = delay
            retry += 1
            yield delay

    @classmethod
    def from_config(cls, config: typing.Optional[typing.Dict[str, typing.Any]]) -> "BackoffPolicy":
        config = config or dict()
        policy = cls(
            base=float(config.get("base", DEFAULT_BACKOFF_BASE)),
            factor=float(config.get("factor", DEFAULT_BACKOFF_FACTOR)),
            maximum=float(config.get("max", DEFAULT_BACKOFF_MAX)),
            jitter=float(config.get("jitter", DEFAULT_BACKOFF_JITTER)),
        )
        policy.validate()
        return policy
