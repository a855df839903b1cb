import json
import time
import typing
from enum import Enum

from eth_typing import ChecksumAddress
from eth_utils import keccak, to_hex

ChainId = int
StepId = str
ArtifactName = str


class ArtifactKind(Enum):
    CONTRACT = "contract"
    PROXY = "proxy"
    IMPLEMENTATION = "implementation"


class StepKind(Enum):
    DEPLOY = "deploy"
    DEPLOY_PROXY = "deploy_proxy"
    UPGRADE_PROXY = "upgrade_proxy"
    CALL = "call"
    GRANT_ROLE = "grant_role"
    VERIFY = "verify"


class StepStatus(Enum):
    SUCCESS = "success"
    TRANSIENT_FAILURE = "transient_failure"
    PERMANENT_FAILURE = "permanent_failure"


class Artifact(typing.NamedTuple):
    """A named, addressed result of a step on a specific chain."""

    name: ArtifactName
    chain_id: ChainId
    address: ChecksumAddress
    kind: ArtifactKind
    produced_by: StepId
    created_at: int
    contract: str
    implementation: typing.Optional[ChecksumAddress] = None
    generation: int = 1
    tx_hash: typing.Optional[str] = None

    def upgraded(
        self, implementation: ChecksumAddress, step_id: StepId, tx_hash: str
    ) -> "Artifact":
        """Returns the next generation of a proxy artifact; the address never changes."""
        return self._replace(
            implementation=implementation,
            generation=self.generation + 1,
            produced_by=step_id,
            created_at=int(time.time()),
            tx_hash=tx_hash,
        )

    def to_dict(self) -> typing.Dict[str, typing.Any]:
        data = self._asdict()
        data["kind"] = self.kind.value
        return data

    @classmethod
    def from_dict(cls, data: typing.Dict[str, typing.Any]) -> "Artifact":
        data = dict(data)
        data["kind"] = ArtifactKind(data["kind"])
        return cls(**data)


class Submission(typing.NamedTuple):
    """A transaction sent on behalf of a step."""

    label: str
    tx_hash: str
    address: typing.Optional[ChecksumAddress] = None


class Receipt(typing.NamedTuple):
    tx_hash: str
    block_number: int
    status: int
    confirmations: int = 0
    contract_address: typing.Optional[ChecksumAddress] = None

    @property
    def succeeded(self) -> bool:
        return self.status == 1


def compute_idempotency_key(
    kind: StepKind, produces: typing.Optional[str], params: typing.Dict[str, typing.Any]
) -> str:
    """Keccak of the canonical JSON description of a step."""
    payload = json.dumps(
        {"kind": kind.value, "produces": produces, "params": params},
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )
    return to_hex(keccak(text=payload))


class Step(typing.NamedTuple):
    """A declared unit of orchestration work. Pure description, no side effects."""

    id: StepId
    kind: StepKind
    depends_on: typing.FrozenSet[str]
    produces: typing.Optional[ArtifactName]
    params: typing.Dict[str, typing.Any]
    idempotency_key: str
    critical: bool = False

    @classmethod
    def create(
        cls,
        id: StepId,
        kind: StepKind,
        depends_on: typing.Iterable[str] = (),
        produces: typing.Optional[ArtifactName] = None,
        params: typing.Optional[typing.Dict[str, typing.Any]] = None,
        critical: bool = False,
    ) -> "Step":
        params = params or dict()
        return cls(
            id=id,
            kind=kind,
            depends_on=frozenset(depends_on),
            produces=produces,
            params=params,
            idempotency_key=compute_idempotency_key(kind, produces, params),
            critical=critical,
        )


class StepResult(typing.NamedTuple):
    """The outcome of one execution attempt of a step."""

    chain_id: ChainId
    step_id: StepId
    attempt: int
    status: StepStatus
    artifact: typing.Optional[Artifact] = None
    error_kind: typing.Optional[str] = None
    error: typing.Optional[str] = None
    tx_hash: typing.Optional[str] = None
    submissions: typing.Tuple[Submission, ...] = ()
    idempotency_key: str = ""
    timestamp: int = 0

    @property
    def succeeded(self) -> bool:
        return self.status is StepStatus.SUCCESS

    def to_dict(self) -> typing.Dict[str, typing.Any]:
        return {
            "chain_id": self.chain_id,
            "step_id": self.step_id,
            "attempt": self.attempt,
            "status": self.status.value,
            "artifact": self.artifact.to_dict() if self.artifact else None,
            "error_kind": self.error_kind,
            "error": self.error,
            "tx_hash": self.tx_hash,
            "submissions": [s._asdict() for s in self.submissions],
            "idempotency_key": self.idempotency_key,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: typing.Dict[str, typing.Any]) -> "StepResult":
        artifact = data.get("artifact")
        return cls(
            chain_id=int(data["chain_id"]),
            step_id=data["step_id"],
            attempt=int(data["attempt"]),
            status=StepStatus(data["status"]),
            artifact=Artifact.from_dict(artifact) if artifact else None,
            error_kind=data.get("error_kind"),
            error=data.get("error"),
            tx_hash=data.get("tx_hash"),
            submissions=tuple(Submission(**s) for s in data.get("submissions") or ()),
            idempotency_key=data.get("idempotency_key", ""),
            timestamp=int(data.get("timestamp", 0)),
        )
