import typing
from abc import ABC, abstractmethod
from enum import Enum

from eth_typing import ChecksumAddress

from chainplan.models import Receipt, Submission

# positional values, or parameter names mapped to values in declaration order
ConstructorArgs = typing.Union[typing.Sequence[typing.Any], typing.Mapping[str, typing.Any]]


class ChainExecutor(ABC):
    """
    Sends transactions to a chain and waits for them.

    Submitting methods return as soon as the network has accepted the transaction;
    callers serialise them per signer. Waiting may happen concurrently.
    """

    @property
    @abstractmethod
    def deployer_address(self) -> ChecksumAddress:
        raise NotImplementedError

    @abstractmethod
    async def deploy(self, contract: str, args: ConstructorArgs) -> Submission:
        """
        Submits a contract creation; the submission carries the new address.
        Named arguments are checked against the constructor parameter names.
        """
        raise NotImplementedError

    @abstractmethod
    async def call(
        self,
        address: ChecksumAddress,
        contract: str,
        function: str,
        args: typing.Sequence[typing.Any],
    ) -> Submission:
        """Submits a state-changing call."""
        raise NotImplementedError

    @abstractmethod
    async def wait_for_confirmations(self, tx_hash: str, confirmations: int) -> Receipt:
        """Raises TransientExecutionError when the receipt does not arrive in time."""
        raise NotImplementedError

    @abstractmethod
    async def get_receipt(self, tx_hash: str) -> typing.Optional[Receipt]:
        """Returns the receipt of a mined transaction, or None if it is unknown."""
        raise NotImplementedError

    @abstractmethod
    async def read(
        self,
        address: ChecksumAddress,
        contract: str,
        function: str,
        args: typing.Sequence[typing.Any] = (),
    ) -> typing.Any:
        raise NotImplementedError

    @abstractmethod
    async def encode_call(
        self, contract: str, function: str, args: typing.Sequence[typing.Any]
    ) -> bytes:
        raise NotImplementedError

    @abstractmethod
    async def get_storage_at(self, address: ChecksumAddress, slot: int) -> bytes:
        raise NotImplementedError


class VerificationStatus(Enum):
    VERIFIED = "verified"
    ALREADY_VERIFIED = "already_verified"
    FAILED = "failed"


class VerificationResult(typing.NamedTuple):
    status: VerificationStatus
    reason: typing.Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status is not VerificationStatus.FAILED


class Verifier(ABC):
    """Submits contract sources to a block explorer."""

    @abstractmethod
    async def verify_source(
        self,
        address: ChecksumAddress,
        contract: str,
        constructor_args: typing.Sequence[typing.Any] = (),
    ) -> VerificationResult:
        """
        Explorers answer "already verified" for known sources; that is reported
        as ALREADY_VERIFIED, not as a failure.
        """
        raise NotImplementedError
