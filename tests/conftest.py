import asyncio
import typing
from collections import defaultdict

import pytest
from eth_utils import keccak, to_checksum_address

from chainplan.constants import (
    EIP1967_ADMIN_SLOT,
    EIP1967_IMPLEMENTATION_SLOT,
    ERC1967_PROXY,
    TRANSPARENT_PROXY,
)
from chainplan.executor import (
    ChainExecutor,
    VerificationResult,
    VerificationStatus,
    Verifier,
)
from chainplan.ledger import RunLedger
from chainplan.models import Receipt, Submission
from chainplan.orchestrator import Orchestrator, RunOptions
from chainplan.plan import DeploymentPlan
from chainplan.retry import BackoffPolicy

CHAIN_ID = 31337
DEPLOYER = "0xdFcF63B785818c47b4Ae26A0b66014A0eDE4763D"
FEE_RECEIVER = "0x5C629f8C0B5368F523C85bFe79d2A8EFB64fB0c8"
WETH = "0x4200000000000000000000000000000000000006"

EMPTY_SLOT = bytes(32)


def _slot_value(address: str) -> bytes:
    return bytes(12) + bytes.fromhex(address[2:])


class FakeExecutor(ChainExecutor):
    """
    In-memory chain. Failures are queued per contract name (deployments) or
    function name (calls) and raised in order, one per submission.
    """

    def __init__(self, submit_delay: float = 0, confirm_delay: float = 0):
        self.submit_delay = submit_delay
        self.submit_delays: typing.List[float] = list()
        self.confirm_delay = confirm_delay
        self.failures: typing.Dict[str, typing.List[BaseException]] = defaultdict(list)
        self.reverts: typing.Set[str] = set()

        self.calls: typing.List[typing.Tuple] = list()
        self.deployments: typing.List[typing.Tuple[str, list, str]] = list()
        self.transactions: typing.List[typing.Tuple[str, str, str, list]] = list()
        self.receipts: typing.Dict[str, Receipt] = dict()
        self.storage: typing.Dict[str, typing.Dict[int, bytes]] = defaultdict(dict)

        self._nonce = 0
        self.submitting = 0
        self.max_submitting = 0
        self.waiting = 0
        self.max_waiting = 0

    @property
    def deployer_address(self) -> str:
        return DEPLOYER

    def _next_address(self) -> str:
        self._nonce += 1
        return to_checksum_address(f"0x{0xC0DE0000 + self._nonce:040x}")

    def _raise_queued(self, key: str) -> None:
        if self.failures.get(key):
            raise self.failures[key].pop(0)

    def _receipt(self, key: str, contract_address: typing.Optional[str] = None) -> str:
        tx_hash = f"0x{len(self.receipts) + 1:064x}"
        status = 0 if key in self.reverts else 1
        self.receipts[tx_hash] = Receipt(
            tx_hash=tx_hash,
            block_number=len(self.receipts) + 1,
            status=status,
            contract_address=contract_address,
        )
        return tx_hash

    async def _submitting(self) -> None:
        self.submitting += 1
        self.max_submitting = max(self.max_submitting, self.submitting)
        try:
            delay = self.submit_delays.pop(0) if self.submit_delays else self.submit_delay
            await asyncio.sleep(delay)
        finally:
            self.submitting -= 1

    async def deploy(self, contract, args) -> Submission:
        self.calls.append(("deploy", contract))
        await self._submitting()
        self._raise_queued(contract)
        args = list(args.values()) if isinstance(args, typing.Mapping) else list(args)
        address = self._next_address()
        self.deployments.append((contract, args, address))
        if contract in (TRANSPARENT_PROXY, ERC1967_PROXY):
            self.storage[address][EIP1967_IMPLEMENTATION_SLOT] = _slot_value(args[0])
        if contract == TRANSPARENT_PROXY:
            # the proxy creates its own admin contract
            self.storage[address][EIP1967_ADMIN_SLOT] = _slot_value(self._next_address())
        tx_hash = self._receipt(contract, contract_address=address)
        return Submission(label="", tx_hash=tx_hash, address=address)

    async def call(self, address, contract, function, args) -> Submission:
        self.calls.append(("call", function))
        await self._submitting()
        self._raise_queued(function)
        args = list(args)
        self.transactions.append((address, contract, function, args))
        if function == "upgradeToAndCall":
            self.storage[address][EIP1967_IMPLEMENTATION_SLOT] = _slot_value(args[0])
        elif function == "upgradeAndCall":
            self.storage[args[0]][EIP1967_IMPLEMENTATION_SLOT] = _slot_value(args[1])
        tx_hash = self._receipt(function)
        return Submission(label="", tx_hash=tx_hash)

    async def wait_for_confirmations(self, tx_hash, confirmations) -> Receipt:
        self.calls.append(("wait", tx_hash))
        self.waiting += 1
        self.max_waiting = max(self.max_waiting, self.waiting)
        try:
            await asyncio.sleep(self.confirm_delay)
        finally:
            self.waiting -= 1
        return self.receipts[tx_hash]._replace(confirmations=confirmations)

    async def get_receipt(self, tx_hash) -> typing.Optional[Receipt]:
        self.calls.append(("receipt", tx_hash))
        return self.receipts.get(tx_hash)

    async def read(self, address, contract, function, args=()) -> typing.Any:
        self.calls.append(("read", function))
        return keccak(text=function)

    async def encode_call(self, contract, function, args) -> bytes:
        self.calls.append(("encode", function))
        return keccak(text=f"{function}({len(args)})")[:4] + bytes(32) * len(args)

    async def get_storage_at(self, address, slot) -> bytes:
        self.calls.append(("storage", slot))
        return self.storage[address].get(slot, EMPTY_SLOT)

    def deployed(self, contract: str) -> typing.List[str]:
        return [address for name, _, address in self.deployments if name == contract]


class FakeVerifier(Verifier):
    def __init__(self, status: VerificationStatus = VerificationStatus.VERIFIED):
        self.status = status
        self.failures: typing.List[BaseException] = list()
        self.verified: typing.List[typing.Tuple[str, str]] = list()

    async def verify_source(self, address, contract, constructor_args=()) -> VerificationResult:
        if self.failures:
            raise self.failures.pop(0)
        self.verified.append((address, contract))
        if self.status is VerificationStatus.FAILED:
            return VerificationResult(self.status, reason="Unable to verify")
        return VerificationResult(self.status)


class SleepRecorder:
    def __init__(self):
        self.delays: typing.List[float] = list()

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def make_plan(steps: typing.List[dict], **sections) -> DeploymentPlan:
    config = {"deployment": {"name": "test", "chain_id": CHAIN_ID}, "steps": steps}
    config.update(sections)
    return DeploymentPlan.from_config(config)


def run_plan(orchestrator: Orchestrator, plan: DeploymentPlan):
    return asyncio.run(
        orchestrator.run(
            plan.graph(), plan.chain_id, external=plan.external, constants=plan.constants
        )
    )


# no jitter, small delays: keeps recorded sleeps predictable
FAST_BACKOFF = BackoffPolicy(base=1.0, factor=2.0, maximum=8.0, jitter=0.0)


@pytest.fixture()
def ledger(tmp_path):
    return RunLedger(tmp_path / "ledger")


@pytest.fixture()
def executor():
    return FakeExecutor()


@pytest.fixture()
def verifier():
    return FakeVerifier()


@pytest.fixture()
def sleeps():
    return SleepRecorder()


@pytest.fixture()
def orchestrator_factory(executor, verifier, ledger, sleeps):
    def factory(**options) -> Orchestrator:
        options.setdefault("backoff", FAST_BACKOFF)
        options.setdefault("step_timeout", None)
        return Orchestrator(
            executor=options.pop("executor", executor),
            verifier=options.pop("verifier", verifier),
            ledger=ledger,
            options=RunOptions(**options),
            sleep=sleeps,
        )

    return factory


@pytest.fixture()
def three_step_plan():
    return make_plan(
        [
            {
                "id": "deploy-token",
                "kind": "deploy",
                "contract": "TokenA",
                "constructor": {"_owner": "$deployer"},
            },
            {
                "id": "deploy-vault",
                "kind": "deploy_proxy",
                "contract": "Vault",
                "proxy": {"initializer": "initialize", "args": ["$TokenA"]},
            },
            {
                "id": "grant-admin",
                "kind": "grant_role",
                "target": "$Vault",
                "role": "ADMIN_ROLE",
                "account": "$TokenA",
            },
        ]
    )
