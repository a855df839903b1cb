import fcntl
import json
import logging
import os
import time
import typing
from collections import OrderedDict
from contextlib import contextmanager
from pathlib import Path

from chainplan.constants import LEDGER_FILE_SUFFIX
from chainplan.errors import (
    ArtifactConflictError,
    ArtifactNotFound,
    CorruptLedgerError,
    DuplicateSuccessError,
)
from chainplan.models import (
    Artifact,
    ArtifactKind,
    ChainId,
    StepId,
    StepResult,
    StepStatus,
    Submission,
)

logger = logging.getLogger(__name__)

RECORD_RESULT = "result"
RECORD_INVALIDATION = "invalidation"
RECORD_SUBMISSION = "submission"

# a step that gave up on a transaction does not know whether it landed
UNSETTLED_ERRORS = ("RetriesExhaustedError",)


class LedgerState(typing.NamedTuple):
    """What a chain's ledger says at the start of a run."""

    chain_id: ChainId
    succeeded: typing.Dict[StepId, StepResult]
    attempts: typing.Dict[StepId, int]

    @property
    def satisfied(self) -> typing.Set[StepId]:
        return set(self.succeeded)


class _ChainRecords:
    """In-memory view of one chain's ledger file."""

    def __init__(self):
        self.offset = 0
        self.results: typing.List[StepResult] = list()
        self.succeeded: typing.Dict[StepId, StepResult] = OrderedDict()
        self.attempts: typing.Dict[StepId, int] = dict()
        self.artifacts: typing.Dict[str, Artifact] = OrderedDict()
        # step id -> label -> (idempotency key, submission)
        self.pending: typing.Dict[StepId, typing.Dict[str, typing.Tuple[str, Submission]]] = dict()

    def _track(self, step_id: StepId, key: str, submission: Submission) -> None:
        self.pending.setdefault(step_id, OrderedDict())[submission.label] = (key, submission)

    def apply(self, record: typing.Dict[str, typing.Any]) -> None:
        record_type = record.get("type")
        if record_type == RECORD_INVALIDATION:
            self.succeeded.pop(record["step_id"], None)
            self.pending.pop(record["step_id"], None)
            return
        if record_type == RECORD_SUBMISSION:
            submission = Submission(**record["submission"])
            self._track(record["step_id"], record.get("idempotency_key", ""), submission)
            return

        result = StepResult.from_dict(record["result"])
        self.results.append(result)
        self.attempts[result.step_id] = max(self.attempts.get(result.step_id, 0), result.attempt)
        if result.succeeded:
            self.succeeded[result.step_id] = result
            self.pending.pop(result.step_id, None)
            if result.artifact:
                self.artifacts[result.artifact.name] = result.artifact
        elif result.status is StepStatus.TRANSIENT_FAILURE or result.error_kind in UNSETTLED_ERRORS:
            for submission in result.submissions:
                self._track(result.step_id, result.idempotency_key, submission)
        else:
            self.pending.pop(result.step_id, None)


class RunLedger:
    """
    Durable, append-only record of step results, one JSON-lines file per chain id.

    Appends are flushed and fsync'ed under an exclusive file lock. Before every
    append the file is re-read from the last known offset, so concurrent runs
    against the same chain see each other's records.
    """

    def __init__(self, directory: Path):
        self.directory = Path(directory)
        self._chains: typing.Dict[ChainId, _ChainRecords] = dict()

    def filepath(self, chain_id: ChainId) -> Path:
        return self.directory / f"{chain_id}{LEDGER_FILE_SUFFIX}"

    def exists(self, chain_id: ChainId) -> bool:
        return self.filepath(chain_id).exists()

    #
    # Reading
    #

    def _refresh(self, chain_id: ChainId) -> _ChainRecords:
        records = self._chains.setdefault(chain_id, _ChainRecords())
        filepath = self.filepath(chain_id)
        if not filepath.exists():
            return records

        with open(filepath, "rb") as file:
            file.seek(records.offset)
            data = file.read()

        lines = data.split(b"\n")
        consumed = records.offset
        for index, line in enumerate(lines):
            is_last = index == len(lines) - 1
            if is_last:
                if line.strip():
                    # no newline terminator: a write was interrupted
                    logger.warning(
                        "Ignoring torn record at the end of %s (%d bytes).", filepath, len(line)
                    )
                break
            consumed += len(line) + 1
            if not line.strip():
                continue
            try:
                record = json.loads(line)
                records.apply(record)
            except (ValueError, KeyError, TypeError) as e:
                raise CorruptLedgerError(
                    f"Corrupt record in {filepath} at byte {consumed - len(line) - 1}: {e}"
                ) from e
        records.offset = consumed
        return records

    def seed(self, chain_id: ChainId) -> LedgerState:
        """Reconstructs the already-satisfied steps so a run can resume safely."""
        records = self._refresh(chain_id)
        return LedgerState(
            chain_id=chain_id,
            succeeded=dict(records.succeeded),
            attempts=dict(records.attempts),
        )

    def results(self, chain_id: ChainId) -> typing.List[StepResult]:
        return list(self._refresh(chain_id).results)

    def success_for(self, chain_id: ChainId, step_id: StepId) -> typing.Optional[StepResult]:
        return self._refresh(chain_id).succeeded.get(step_id)

    def last_attempt(self, chain_id: ChainId, step_id: StepId) -> int:
        return self._refresh(chain_id).attempts.get(step_id, 0)

    def artifacts(self, chain_id: ChainId) -> typing.List[Artifact]:
        """Latest generation of every artifact recorded on a chain."""
        return list(self._refresh(chain_id).artifacts.values())

    def lookup_artifact(self, chain_id: ChainId, name: str) -> Artifact:
        try:
            return self._refresh(chain_id).artifacts[name]
        except KeyError:
            raise ArtifactNotFound(chain_id=chain_id, name=name)

    def pending_submissions(
        self, chain_id: ChainId, step_id: StepId, idempotency_key: typing.Optional[str] = None
    ) -> typing.Dict[str, Submission]:
        """
        Transactions sent by unfinished attempts of a step since its last success,
        so a resumed run waits for them instead of sending them again. With an
        idempotency key, only transactions sent for that same declaration count.
        """
        records = self._refresh(chain_id)
        if step_id in records.succeeded:
            return dict()
        return OrderedDict(
            (label, submission)
            for label, (key, submission) in records.pending.get(step_id, dict()).items()
            if idempotency_key is None or not key or key == idempotency_key
        )

    #
    # Writing
    #

    @contextmanager
    def _locked(self, chain_id: ChainId):
        self.directory.mkdir(parents=True, exist_ok=True)
        with open(self.filepath(chain_id), "ab") as file:
            fcntl.flock(file.fileno(), fcntl.LOCK_EX)
            try:
                yield file
            finally:
                fcntl.flock(file.fileno(), fcntl.LOCK_UN)

    def _append(self, chain_id: ChainId, file, record: typing.Dict[str, typing.Any]) -> None:
        records = self._refresh(chain_id)
        size = os.fstat(file.fileno()).st_size
        if size > records.offset:
            # drop a torn tail so the new record starts on its own line
            logger.warning("Truncating %d torn bytes from %s.", size - records.offset, file.name)
            os.ftruncate(file.fileno(), records.offset)

        line = json.dumps(record, sort_keys=True, separators=(",", ":")) + "\n"
        file.write(line.encode())
        file.flush()
        os.fsync(file.fileno())
        self._refresh(chain_id)

    def _check_artifact(self, records: _ChainRecords, artifact: Artifact) -> None:
        existing = records.artifacts.get(artifact.name)
        if existing is None:
            # proxies deployed outside the ledger are adopted at their first upgrade
            if artifact.generation != 1 and artifact.kind is not ArtifactKind.PROXY:
                raise ArtifactConflictError(
                    f"Artifact '{artifact.name}' cannot start at generation {artifact.generation}."
                )
            return
        if existing.kind is not ArtifactKind.PROXY or artifact.kind is not ArtifactKind.PROXY:
            raise ArtifactConflictError(
                f"Artifact '{artifact.name}' is already recorded at {existing.address} "
                f"on chain {artifact.chain_id} and cannot be replaced."
            )
        if existing.address != artifact.address:
            raise ArtifactConflictError(
                f"Proxy '{artifact.name}' is recorded at {existing.address}; "
                f"an upgrade cannot move it to {artifact.address}."
            )
        if artifact.generation != existing.generation + 1:
            raise ArtifactConflictError(
                f"Proxy '{artifact.name}' is at generation {existing.generation}; "
                f"got generation {artifact.generation}."
            )

    def record_result(self, chain_id: ChainId, result: StepResult) -> StepResult:
        """Appends a step result. A step can succeed only once per chain."""
        if result.chain_id != chain_id:
            raise ValueError(f"Result for chain {result.chain_id} recorded against {chain_id}.")
        if not result.timestamp:
            result = result._replace(timestamp=int(time.time()))

        with self._locked(chain_id) as file:
            records = self._refresh(chain_id)
            if result.succeeded:
                if result.step_id in records.succeeded:
                    raise DuplicateSuccessError(chain_id=chain_id, step_id=result.step_id)
                if result.artifact:
                    self._check_artifact(records, result.artifact)
            self._append(chain_id, file, {"type": RECORD_RESULT, "result": result.to_dict()})

        logger.debug(
            "Recorded %s for %s (attempt %d) on chain %d",
            result.status.value,
            result.step_id,
            result.attempt,
            chain_id,
        )
        return result

    def record_submission(
        self, chain_id: ChainId, step_id: StepId, submission: Submission, idempotency_key: str = ""
    ) -> None:
        """Appends a sent transaction before it is confirmed, so a crash cannot lose it."""
        with self._locked(chain_id) as file:
            self._refresh(chain_id)
            record = {
                "type": RECORD_SUBMISSION,
                "chain_id": chain_id,
                "step_id": step_id,
                "submission": submission._asdict(),
                "idempotency_key": idempotency_key,
                "timestamp": int(time.time()),
            }
            self._append(chain_id, file, record)
        logger.debug(
            "Recorded %s transaction %s for %s", submission.label, submission.tx_hash, step_id
        )

    def invalidate(self, chain_id: ChainId, step_id: StepId, reason: str) -> None:
        """Marks a step's success as void so it runs again. Artifacts are untouched."""
        with self._locked(chain_id) as file:
            self._refresh(chain_id)
            record = {
                "type": RECORD_INVALIDATION,
                "chain_id": chain_id,
                "step_id": step_id,
                "reason": reason,
                "timestamp": int(time.time()),
            }
            self._append(chain_id, file, record)
        logger.info("Invalidated step %s on chain %d: %s", step_id, chain_id, reason)
