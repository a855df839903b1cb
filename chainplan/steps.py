import asyncio
import logging
import time
import typing
from collections import OrderedDict

from eth_typing import ChecksumAddress
from eth_utils import to_checksum_address

from chainplan.constants import (
    CALL_LABEL,
    CONTRACT_LABEL,
    EIP1967_ADMIN_SLOT,
    EIP1967_IMPLEMENTATION_SLOT,
    ERC1967_PROXY,
    IMPLEMENTATION_LABEL,
    PROXY_ADMIN,
    PROXY_KIND_TRANSPARENT,
    PROXY_KIND_UUPS,
    PROXY_LABEL,
    TRANSPARENT_PROXY,
    UPGRADE_LABEL,
)
from chainplan.errors import ArtifactNotFound, PermanentExecutionError, VerificationError
from chainplan.executor import ChainExecutor, ConstructorArgs, Verifier
from chainplan.models import Artifact, ArtifactKind, ChainId, Receipt, Step, StepKind, Submission
from chainplan.params import Resolver, Variable

logger = logging.getLogger(__name__)

EXTERNAL_PRODUCER = "external"


class StepOutcome(typing.NamedTuple):
    artifact: typing.Optional[Artifact] = None
    tx_hash: typing.Optional[str] = None


class StepContext:
    """
    Everything one step needs to execute, kept across its retry attempts.

    Submissions are remembered by label: an attempt that times out leaves its
    transaction in flight, and the next attempt waits for that same transaction
    instead of sending a new one.
    """

    def __init__(
        self,
        step: Step,
        chain_id: ChainId,
        executor: ChainExecutor,
        verifier: typing.Optional[Verifier],
        resolver: Resolver,
        signer_lock: asyncio.Lock,
        confirmations: int,
        constants: typing.Optional[typing.Dict[str, typing.Any]] = None,
        recorded: typing.Optional[typing.Dict[str, Submission]] = None,
        on_submit: typing.Optional[typing.Callable[[Submission], None]] = None,
    ):
        self.step = step
        self.chain_id = chain_id
        self.executor = executor
        self.verifier = verifier
        self.resolver = resolver
        self.signer_lock = signer_lock
        self.confirmations = confirmations
        self.constants = constants or dict()
        self.submissions: typing.Dict[str, Submission] = OrderedDict()
        self._recorded = dict(recorded or dict())
        self._on_submit = on_submit
        self._inflight: typing.Dict[str, asyncio.Future] = dict()

    @property
    def params(self) -> typing.Dict[str, typing.Any]:
        return self.step.params

    async def resolve(self, value: typing.Any, contract: typing.Optional[str] = None) -> typing.Any:
        return await self.resolver.resolve(value, contract_name=contract, constants=self.constants)

    async def constructor_args(
        self, contract: str, constructor: typing.Optional[typing.Dict[str, typing.Any]]
    ) -> typing.Dict[str, typing.Any]:
        """Resolved constructor parameters by name, in declaration order."""
        resolved = await self.resolve(constructor or dict(), contract=contract)
        return OrderedDict(resolved)

    def lookup(self, name: str) -> Artifact:
        """The artifact as the step that this step builds on left it."""
        return self.resolver.lookup(name)

    def latest(self, name: str) -> Artifact:
        return self.resolver.ledger.lookup_artifact(self.chain_id, name)

    async def _send(
        self, label: str, send: typing.Callable[[], typing.Awaitable[Submission]]
    ) -> Submission:
        # one submission at a time per signer; receipts are awaited outside the lock
        async with self.signer_lock:
            submission = (await send())._replace(label=label)
            if self._on_submit is not None:
                self._on_submit(submission)
            return submission

    async def submit(
        self, label: str, send: typing.Callable[[], typing.Awaitable[Submission]]
    ) -> Submission:
        if label in self.submissions:
            return self.submissions[label]

        recorded = self._recorded.pop(label, None)
        if recorded is not None:
            receipt = await self.executor.get_receipt(recorded.tx_hash)
            if receipt is not None and receipt.succeeded:
                logger.info("%s: reusing %s transaction %s", self.step.id, label, recorded.tx_hash)
                self.submissions[label] = recorded
                return recorded
            logger.warning(
                "%s: recorded %s transaction %s did not land; sending again",
                self.step.id,
                label,
                recorded.tx_hash,
            )

        task = self._inflight.get(label)
        if task is None:
            task = asyncio.ensure_future(self._send(label, send))
            self._inflight[label] = task
        try:
            submission = await asyncio.shield(task)
        except asyncio.CancelledError:
            raise  # the shielded submission keeps going; the next attempt awaits it
        except Exception:
            self._inflight.pop(label, None)
            raise

        self._inflight.pop(label, None)
        self.submissions[label] = submission
        logger.info("%s: sent %s transaction %s", self.step.id, label, submission.tx_hash)
        return submission

    async def confirm(self, submission: Submission) -> Receipt:
        receipt = await self.executor.wait_for_confirmations(
            submission.tx_hash, self.confirmations
        )
        if not receipt.succeeded:
            raise PermanentExecutionError(
                f"Transaction {submission.tx_hash} reverted", tx_hash=submission.tx_hash
            )
        return receipt

    async def transact(
        self, label: str, send: typing.Callable[[], typing.Awaitable[Submission]]
    ) -> typing.Tuple[Submission, Receipt]:
        submission = await self.submit(label, send)
        receipt = await self.confirm(submission)
        return submission, receipt

    async def read_slot_address(
        self, address: ChecksumAddress, slot: int
    ) -> typing.Optional[ChecksumAddress]:
        """Reads an address stored in an EIP-1967 slot; None if the slot is empty."""
        data = bytes(await self.executor.get_storage_at(address, slot))
        if not any(data):
            return None
        return to_checksum_address(data[-20:])


def _target_name(step: Step) -> str:
    return step.params["target"][len(Variable.VARIABLE_PREFIX) :]


def _contract_for_target(context: StepContext, target_name: str) -> str:
    contract = context.params.get("contract")
    if contract:
        return contract
    try:
        return context.lookup(target_name).contract
    except ArtifactNotFound:
        raise PermanentExecutionError(
            f"Step '{context.step.id}' needs a 'contract' for external artifact '{target_name}'."
        )


def _new_artifact(
    context: StepContext,
    address: ChecksumAddress,
    kind: ArtifactKind,
    contract: str,
    tx_hash: str,
    implementation: typing.Optional[ChecksumAddress] = None,
) -> Artifact:
    return Artifact(
        name=context.step.produces,
        chain_id=context.chain_id,
        address=to_checksum_address(address),
        kind=kind,
        produced_by=context.step.id,
        created_at=int(time.time()),
        contract=contract,
        implementation=to_checksum_address(implementation) if implementation else None,
        generation=1,
        tx_hash=tx_hash,
    )


async def _deploy(
    context: StepContext, label: str, contract: str, args: ConstructorArgs
) -> ChecksumAddress:
    submission, receipt = await context.transact(
        label, lambda: context.executor.deploy(contract, args)
    )
    address = submission.address or receipt.contract_address
    if not address:
        raise PermanentExecutionError(
            f"Deployment of {contract} returned no address", tx_hash=submission.tx_hash
        )
    return to_checksum_address(address)


async def deploy_contract(context: StepContext) -> StepOutcome:
    contract = context.params["contract"]
    args = await context.constructor_args(contract, context.params.get("constructor"))
    address = await _deploy(context, CONTRACT_LABEL, contract, args)
    tx_hash = context.submissions[CONTRACT_LABEL].tx_hash
    artifact = _new_artifact(context, address, ArtifactKind.CONTRACT, contract, tx_hash)
    return StepOutcome(artifact=artifact, tx_hash=tx_hash)


async def deploy_proxy(context: StepContext) -> StepOutcome:
    contract = context.params["contract"]
    args = await context.constructor_args(contract, context.params.get("constructor"))
    implementation = await _deploy(context, IMPLEMENTATION_LABEL, contract, args)

    proxy = context.params.get("proxy") or dict()
    data = b""
    initializer = proxy.get("initializer")
    if initializer:
        initializer_args = await context.resolve(proxy.get("args") or list(), contract=contract)
        data = await context.executor.encode_call(contract, initializer, initializer_args)

    if proxy.get("kind", PROXY_KIND_TRANSPARENT) == PROXY_KIND_UUPS:
        proxy_contract = ERC1967_PROXY
        proxy_args = [implementation, data]
    else:
        proxy_contract = TRANSPARENT_PROXY
        owner = await context.resolve(proxy.get("owner", "$deployer"))
        proxy_args = [implementation, owner, data]

    logger.info(
        "%s: wrapping %s at %s into %s", context.step.id, contract, implementation, proxy_contract
    )
    address = await _deploy(context, PROXY_LABEL, proxy_contract, proxy_args)
    tx_hash = context.submissions[PROXY_LABEL].tx_hash
    artifact = _new_artifact(
        context, address, ArtifactKind.PROXY, contract, tx_hash, implementation=implementation
    )
    return StepOutcome(artifact=artifact, tx_hash=tx_hash)


async def _current_proxy(context: StepContext, name: str, contract: str) -> Artifact:
    """The recorded proxy artifact, or an external proxy adopted at generation 1."""
    try:
        artifact = context.latest(name)
    except ArtifactNotFound:
        address = context.resolver.external.get(name)
        if not address:
            raise
        implementation = await context.read_slot_address(address, EIP1967_IMPLEMENTATION_SLOT)
        return Artifact(
            name=name,
            chain_id=context.chain_id,
            address=address,
            kind=ArtifactKind.PROXY,
            produced_by=EXTERNAL_PRODUCER,
            created_at=int(time.time()),
            contract=contract,
            implementation=implementation,
        )

    if artifact.kind is not ArtifactKind.PROXY:
        raise PermanentExecutionError(f"Artifact '{name}' is not a proxy and cannot be upgraded.")
    return artifact


async def upgrade_proxy(context: StepContext) -> StepOutcome:
    contract = context.params["contract"]
    current = await _current_proxy(context, context.step.produces, contract)

    args = await context.constructor_args(contract, context.params.get("constructor"))
    implementation = await _deploy(context, IMPLEMENTATION_LABEL, contract, args)

    data = b""
    call = context.params.get("call")
    if call:
        call_args = await context.resolve(call.get("args") or list(), contract=contract)
        data = await context.executor.encode_call(contract, call["function"], call_args)

    admin = await context.read_slot_address(current.address, EIP1967_ADMIN_SLOT)
    proxy_kind = context.params.get("proxy_kind")
    if proxy_kind is None:
        proxy_kind = PROXY_KIND_TRANSPARENT if admin else PROXY_KIND_UUPS

    if proxy_kind == PROXY_KIND_UUPS:
        submission, _ = await context.transact(
            UPGRADE_LABEL,
            lambda: context.executor.call(
                current.address, contract, "upgradeToAndCall", [implementation, data]
            ),
        )
    else:
        if admin is None:
            raise PermanentExecutionError(
                f"Admin slot for contract at {current.address} is empty. "
                "Are you sure this is an EIP1967-compatible proxy?"
            )
        submission, _ = await context.transact(
            UPGRADE_LABEL,
            lambda: context.executor.call(
                admin, PROXY_ADMIN, "upgradeAndCall", [current.address, implementation, data]
            ),
        )

    pointer = await context.read_slot_address(current.address, EIP1967_IMPLEMENTATION_SLOT)
    if pointer != implementation:
        raise PermanentExecutionError(
            f"Proxy {current.address} points at {pointer} after upgrade, expected {implementation}",
            tx_hash=submission.tx_hash,
        )

    logger.info(
        "%s: %s upgraded to %s (generation %d)",
        context.step.id,
        current.name,
        implementation,
        current.generation + 1,
    )
    artifact = current.upgraded(implementation, context.step.id, submission.tx_hash)
    artifact = artifact._replace(contract=contract)
    return StepOutcome(artifact=artifact, tx_hash=submission.tx_hash)


async def call_contract(context: StepContext) -> StepOutcome:
    target_name = _target_name(context.step)
    contract = _contract_for_target(context, target_name)
    target = await context.resolve(context.params["target"])
    function = context.params["function"]
    args = await context.resolve(context.params.get("args") or list(), contract=contract)

    submission, _ = await context.transact(
        CALL_LABEL, lambda: context.executor.call(target, contract, function, args)
    )
    return StepOutcome(tx_hash=submission.tx_hash)


async def _resolve_role(context: StepContext, target: ChecksumAddress, contract: str) -> typing.Any:
    """A role is a literal (int or hex), a plan constant, or the name of a role getter."""
    role = context.params["role"]
    if isinstance(role, int) or Variable.is_variable(role):
        return await context.resolve(role, contract=contract)
    if isinstance(role, str) and role.startswith("0x"):
        return role
    return await context.executor.read(target, contract, role)


async def grant_role(context: StepContext) -> StepOutcome:
    target_name = _target_name(context.step)
    contract = _contract_for_target(context, target_name)
    target = await context.resolve(context.params["target"])
    role = await _resolve_role(context, target, contract)
    account = await context.resolve(context.params["account"])
    extra = await context.resolve(context.params.get("args") or list(), contract=contract)
    function = context.params.get("function", "grantRole")

    logger.info("%s: granting %s to %s", context.step.id, context.params["role"], account)
    submission, _ = await context.transact(
        CALL_LABEL,
        lambda: context.executor.call(target, contract, function, [role, account, *extra]),
    )
    return StepOutcome(tx_hash=submission.tx_hash)


async def _verify(
    context: StepContext, address: ChecksumAddress, contract: str, args: typing.Sequence[typing.Any]
) -> None:
    logger.info("%s: verifying %s at %s", context.step.id, contract, address)
    result = await context.verifier.verify_source(address, contract, list(args))
    if not result.ok:
        raise VerificationError(result.reason or f"Verification of {contract} failed.")
    logger.info("%s: %s %s", context.step.id, contract, result.status.value.replace("_", " "))


async def verify_contract(context: StepContext) -> StepOutcome:
    if context.verifier is None:
        raise VerificationError("No verifier is configured for this chain.")

    target_name = _target_name(context.step)
    try:
        artifact = context.lookup(target_name)
    except ArtifactNotFound:
        artifact = None
        address = await context.resolve(context.params["target"])
        contract = _contract_for_target(context, target_name)
    else:
        address = artifact.address
        contract = context.params.get("contract") or artifact.contract

    args = await context.constructor_args(contract, context.params.get("constructor"))
    if artifact is None or artifact.kind is not ArtifactKind.PROXY:
        await _verify(context, address, contract, args.values())
        return StepOutcome()

    # the implementation carries the source; publishing the proxy lets the explorer link them
    await _verify(context, artifact.implementation, contract, args.values())
    admin = await context.read_slot_address(artifact.address, EIP1967_ADMIN_SLOT)
    proxy_contract = TRANSPARENT_PROXY if admin else ERC1967_PROXY
    await _verify(context, artifact.address, proxy_contract, ())
    return StepOutcome()


STEP_HANDLERS: typing.Dict[
    StepKind, typing.Callable[[StepContext], typing.Awaitable[StepOutcome]]
] = {
    StepKind.DEPLOY: deploy_contract,
    StepKind.DEPLOY_PROXY: deploy_proxy,
    StepKind.UPGRADE_PROXY: upgrade_proxy,
    StepKind.CALL: call_contract,
    StepKind.GRANT_ROLE: grant_role,
    StepKind.VERIFY: verify_contract,
}
