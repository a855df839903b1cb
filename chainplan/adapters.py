import asyncio
import logging
import typing
from collections import OrderedDict

from ape import chain, networks
from ape.api import AccountAPI, ReceiptAPI
from ape.exceptions import TransactionNotFoundError
from eth_typing import ChecksumAddress
from eth_utils import to_checksum_address
from ethpm_types import MethodABI
from hexbytes import HexBytes
from web3.auto import w3

from chainplan.errors import (
    ExecutionError,
    PermanentExecutionError,
    TransientExecutionError,
)
from chainplan.executor import (
    ChainExecutor,
    ConstructorArgs,
    VerificationResult,
    VerificationStatus,
    Verifier,
)
from chainplan.models import Receipt, Submission
from chainplan.retry import classify_error
from chainplan.utils import get_contract_container

logger = logging.getLogger(__name__)

RECEIPT_TIMEOUT = 300  # seconds
RECEIPT_LOOKUP_TIMEOUT = 1  # seconds

ALREADY_VERIFIED_MARKERS = ("already verified", "contract source code already verified")


def _validate_method_args(
    method_abis: typing.List[MethodABI], args: typing.Sequence[typing.Any]
) -> typing.Dict[str, typing.Any]:
    """Validates the transaction arguments against the function ABI."""
    if len(method_abis) == 0:
        raise PermanentExecutionError("No method abis provided for validation of args")

    abis_matching_args_length = [abi for abi in method_abis if len(abi.inputs) == len(args)]
    for abi in abis_matching_args_length:
        named_args = {}
        for arg, abi_input in zip(args, abi.inputs):
            if not w3.is_encodable(abi_input.type, arg):
                break
            named_args[abi_input.name] = arg
        else:
            return named_args
    raise PermanentExecutionError(
        f"Invalid argument: no ABI for '{getattr(method_abis[0], 'name', 'constructor')}' "
        f"with {len(args)} arg(s) and given type(s)"
    )


def _validate_constructor_abi_inputs(
    contract_name: str,
    abi_inputs: typing.List[typing.Any],
    parameters: typing.Mapping[str, typing.Any],
) -> None:
    """Validates named constructor parameters against the constructor ABI."""
    if len(parameters) != len(abi_inputs):
        raise PermanentExecutionError(
            f"Invalid argument: constructor parameters length mismatch - "
            f"{contract_name} ABI requires {len(abi_inputs)}, got {len(parameters)}."
        )

    codex = enumerate(zip(abi_inputs, parameters.items()), start=0)
    for position, (abi_input, (name, value)) in codex:
        if abi_input.name != name:
            raise PermanentExecutionError(
                f"Invalid argument: {contract_name} constructor parameter '{name}' at position "
                f"{position} does not match the expected ABI name '{abi_input.name}'."
            )
        if not w3.is_encodable(abi_input.type, value):
            raise PermanentExecutionError(
                f"Invalid argument: constructor param '{name}' at position {position} has a "
                f"value '{value}' whose type does not match expected ABI type '{abi_input.type}'"
            )


def _to_receipt(receipt: ReceiptAPI, confirmations: int = 0) -> Receipt:
    contract_address = getattr(receipt, "contract_address", None)
    return Receipt(
        tx_hash=HexBytes(receipt.txn_hash).hex(),
        block_number=receipt.block_number,
        status=int(receipt.status),
        confirmations=confirmations,
        contract_address=to_checksum_address(contract_address) if contract_address else None,
    )


async def _in_thread(function: typing.Callable, *args, **kwargs) -> typing.Any:
    """Runs a blocking ape call off the event loop, mapping its errors onto the taxonomy."""
    try:
        return await asyncio.to_thread(function, *args, **kwargs)
    except ExecutionError:
        raise
    except Exception as e:
        raise classify_error(e) from e


class ApeChainExecutor(ChainExecutor):
    """
    Executes transactions with an ape account on the connected provider.
    Contracts are looked up by name in the project, then in its dependencies.
    """

    def __init__(self, account: AccountAPI, autosign: bool = False):
        self._account = account
        if autosign:
            logger.warning("Autosign is enabled. Transactions will be signed automatically.")
            self._account.set_autosign(True)

    @property
    def deployer_address(self) -> ChecksumAddress:
        return self._account.address

    def _deploy(self, contract: str, args: ConstructorArgs) -> Submission:
        container = get_contract_container(contract)
        if isinstance(args, typing.Mapping):
            _validate_constructor_abi_inputs(
                contract_name=contract,
                abi_inputs=container.constructor.abi.inputs,
                parameters=OrderedDict(args),
            )
            args = list(args.values())
        elif container.constructor.abi.inputs or args:
            _validate_method_args([container.constructor.abi], args)

        instance = self._account.deploy(container, *args, required_confirmations=0)
        tx_hash = HexBytes(instance.txn_hash).hex()
        return Submission(label="", tx_hash=tx_hash, address=instance.address)

    async def deploy(self, contract: str, args: ConstructorArgs) -> Submission:
        return await _in_thread(self._deploy, contract, args)

    def _call(
        self,
        address: ChecksumAddress,
        contract: str,
        function: str,
        args: typing.Sequence[typing.Any],
    ) -> Submission:
        instance = get_contract_container(contract).at(address)
        method = getattr(instance, function)
        named_args = _validate_method_args(method_abis=method.abis, args=args)
        pretty_args = ", ".join(f"{k}={v}" for k, v in named_args.items())
        logger.info("Transacting %s[%s].%s(%s)", contract, address[:10], function, pretty_args)
        receipt = method(*args, sender=self._account, required_confirmations=0)
        return Submission(label="", tx_hash=HexBytes(receipt.txn_hash).hex())

    async def call(
        self,
        address: ChecksumAddress,
        contract: str,
        function: str,
        args: typing.Sequence[typing.Any],
    ) -> Submission:
        return await _in_thread(self._call, address, contract, function, list(args))

    def _wait(self, tx_hash: str, confirmations: int) -> Receipt:
        try:
            receipt = chain.provider.get_receipt(
                tx_hash, required_confirmations=confirmations, timeout=RECEIPT_TIMEOUT
            )
        except TransactionNotFoundError as e:
            raise TransientExecutionError(
                f"Transaction {tx_hash} not confirmed within {RECEIPT_TIMEOUT}s", tx_hash=tx_hash
            ) from e
        return _to_receipt(receipt, confirmations=confirmations)

    async def wait_for_confirmations(self, tx_hash: str, confirmations: int) -> Receipt:
        return await _in_thread(self._wait, tx_hash, confirmations)

    def _lookup_receipt(self, tx_hash: str) -> typing.Optional[Receipt]:
        try:
            receipt = chain.provider.get_receipt(tx_hash, timeout=RECEIPT_LOOKUP_TIMEOUT)
        except TransactionNotFoundError:
            return None
        return _to_receipt(receipt)

    async def get_receipt(self, tx_hash: str) -> typing.Optional[Receipt]:
        return await _in_thread(self._lookup_receipt, tx_hash)

    def _read(
        self,
        address: ChecksumAddress,
        contract: str,
        function: str,
        args: typing.Sequence[typing.Any],
    ) -> typing.Any:
        instance = get_contract_container(contract).at(address)
        return getattr(instance, function)(*args)

    async def read(
        self,
        address: ChecksumAddress,
        contract: str,
        function: str,
        args: typing.Sequence[typing.Any] = (),
    ) -> typing.Any:
        return await _in_thread(self._read, address, contract, function, list(args))

    def _encode_call(
        self, contract: str, function: str, args: typing.Sequence[typing.Any]
    ) -> bytes:
        container = get_contract_container(contract)
        method_abis = [abi for abi in container.contract_type.methods if abi.name == function]
        _validate_method_args(method_abis=method_abis, args=args)
        abi = next(abi for abi in method_abis if len(abi.inputs) == len(args))
        ecosystem = networks.provider.network.ecosystem
        selector = ecosystem.get_method_selector(abi)
        return bytes(HexBytes(selector) + HexBytes(ecosystem.encode_calldata(abi, *args)))

    async def encode_call(
        self, contract: str, function: str, args: typing.Sequence[typing.Any]
    ) -> bytes:
        return await _in_thread(self._encode_call, contract, function, list(args))

    def _get_storage_at(self, address: ChecksumAddress, slot: int) -> bytes:
        return bytes(chain.provider.get_storage_at(address=address, slot=slot))

    async def get_storage_at(self, address: ChecksumAddress, slot: int) -> bytes:
        return await _in_thread(self._get_storage_at, address, slot)


class ExplorerVerifier(Verifier):
    """
    Publishes sources through the network's explorer plugin (ape-etherscan).
    The plugin derives constructor arguments from the creation transaction.
    """

    def _publish(self, address: ChecksumAddress) -> None:
        explorer = networks.provider.network.explorer
        if explorer is None:
            raise PermanentExecutionError(
                f"No explorer plugin is configured for {networks.provider.network.name}."
            )
        explorer.publish_contract(address)

    async def verify_source(
        self,
        address: ChecksumAddress,
        contract: str,
        constructor_args: typing.Sequence[typing.Any] = (),
    ) -> VerificationResult:
        logger.info("Verifying %s at %s...", contract, address)
        try:
            await asyncio.to_thread(self._publish, address)
        except Exception as e:
            message = str(e)
            if any(marker in message.lower() for marker in ALREADY_VERIFIED_MARKERS):
                return VerificationResult(VerificationStatus.ALREADY_VERIFIED)
            error = classify_error(e)
            if isinstance(error, TransientExecutionError):
                raise error from e
            return VerificationResult(VerificationStatus.FAILED, reason=message)
        return VerificationResult(VerificationStatus.VERIFIED)
