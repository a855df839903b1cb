import copy
import typing
from abc import ABC, abstractmethod

from eth_utils import to_hex

from chainplan.constants import ZERO_ADDRESS
from chainplan.errors import ArtifactNotFound, InvalidPlanError, PermanentExecutionError
from chainplan.models import Artifact, ArtifactKind, ChainId, StepId

if typing.TYPE_CHECKING:
    from chainplan.executor import ChainExecutor
    from chainplan.ledger import RunLedger


ADDRESS_ATTRIBUTE = "address"
IMPLEMENTATION_ATTRIBUTE = "implementation"


class VariableContext:
    def __init__(
        self,
        artifact_names: typing.Iterable[str],
        contract_name: typing.Optional[str] = None,
        constants: typing.Optional[typing.Dict[str, typing.Any]] = None,
    ):
        self.artifact_names = set(artifact_names)
        self.contract_name = contract_name
        self.constants = constants or dict()


class Resolver:
    """Turns parameter references into concrete values on one chain."""

    def __init__(
        self,
        chain_id: ChainId,
        ledger: "RunLedger",
        executor: typing.Optional["ChainExecutor"] = None,
        external: typing.Optional[typing.Dict[str, typing.Optional[str]]] = None,
        eager: bool = False,
        planned: typing.Iterable[str] = (),
        pins: typing.Optional[typing.Dict[str, StepId]] = None,
    ):
        self.chain_id = chain_id
        self.ledger = ledger
        self.executor = executor
        self.external = external or dict()
        # artifacts the plan will produce; only referenced before they exist in dry runs
        self.planned = set(planned)
        # eager resolution (dry runs) tolerates artifacts that do not exist yet
        self.eager = eager
        # artifact name -> the step whose result a reference reads
        self.pins = dict(pins or dict())

    def pinned(self, pins: typing.Dict[str, StepId]) -> "Resolver":
        """A resolver that reads each artifact as its pinned step left it."""
        resolver = copy.copy(self)
        resolver.pins = dict(pins)
        return resolver

    def lookup(self, name: str) -> Artifact:
        """
        The artifact generation recorded by the pinned producer step, so that a step
        declared before an upgrade keeps seeing the implementation it was written
        against. Unpinned names read the latest generation.
        """
        producer = self.pins.get(name)
        if producer is not None:
            result = self.ledger.success_for(self.chain_id, producer)
            if result is not None and result.artifact and result.artifact.name == name:
                return result.artifact
        return self.ledger.lookup_artifact(self.chain_id, name)

    def artifact_address(self, name: str, attribute: str = ADDRESS_ATTRIBUTE) -> str:
        try:
            artifact = self.lookup(name)
        except ArtifactNotFound:
            address = self.external.get(name)
            if address and attribute == ADDRESS_ATTRIBUTE:
                return address
            if self.eager:
                return ZERO_ADDRESS
            raise

        if attribute == IMPLEMENTATION_ATTRIBUTE:
            if artifact.kind is not ArtifactKind.PROXY:
                raise PermanentExecutionError(f"Artifact '{name}' is not a proxy.")
            return artifact.implementation
        return artifact.address

    async def resolve(
        self,
        value: typing.Any,
        contract_name: typing.Optional[str] = None,
        constants: typing.Optional[typing.Dict[str, typing.Any]] = None,
    ) -> typing.Any:
        """Parses and resolves a raw parameter value (scalars, lists and mappings)."""
        context = VariableContext(
            artifact_names=self._known_names(),
            contract_name=contract_name,
            constants=constants,
        )
        processed = process_raw_value(value, context)
        return await resolve_param(processed, self)

    def _known_names(self) -> typing.Set[str]:
        names = {artifact.name for artifact in self.ledger.artifacts(self.chain_id)}
        return names | set(self.external) | self.planned


# Variables


class Variable(ABC):
    VARIABLE_PREFIX = "$"

    @abstractmethod
    async def resolve(self, resolver: Resolver) -> typing.Any:
        raise NotImplementedError

    def references(self) -> typing.Set[str]:
        """Artifact names this variable depends on."""
        return set()

    @classmethod
    def is_variable(cls, param: typing.Any) -> bool:
        """Returns True if the param is a variable."""
        result = isinstance(param, str) and param.startswith(cls.VARIABLE_PREFIX)
        return result


class DeployerAccount(Variable):
    DEPLOYER_INDICATOR = "deployer"

    @classmethod
    def is_deployer(cls, value: str) -> bool:
        """Returns True if the variable is the special deployer variable."""
        return value == cls.DEPLOYER_INDICATOR

    async def resolve(self, resolver: Resolver) -> typing.Any:
        if resolver.executor is None:
            return ZERO_ADDRESS
        return resolver.executor.deployer_address


class Constant(Variable):
    def __init__(self, constant_name: str, context: VariableContext):
        try:
            self.constant_value = context.constants[constant_name]
        except KeyError:
            raise InvalidPlanError(f"Constant '{constant_name}' not found in deployment plan.")

    @classmethod
    def is_constant(cls, value: str, context: VariableContext) -> bool:
        """Upper case names are constants, unless an artifact carries that name."""
        if value in context.constants:
            return True
        return value.isupper() and value not in context.artifact_names

    async def resolve(self, resolver: Resolver) -> typing.Any:
        return self.constant_value


class ArtifactReference(Variable):
    ADDRESS = ADDRESS_ATTRIBUTE
    IMPLEMENTATION = IMPLEMENTATION_ATTRIBUTE
    ATTRIBUTE_DELIMITER = "."

    def __init__(self, variable: str, context: VariableContext):
        name, _, attribute = variable.partition(self.ATTRIBUTE_DELIMITER)
        attribute = attribute or self.ADDRESS
        if attribute not in (self.ADDRESS, self.IMPLEMENTATION):
            raise InvalidPlanError(f"Unknown artifact attribute '{attribute}' in ${variable}")
        if name not in context.artifact_names:
            raise InvalidPlanError(f"Artifact '{name}' not found")

        self.name = name
        self.attribute = attribute

    def references(self) -> typing.Set[str]:
        return {self.name}

    async def resolve(self, resolver: Resolver) -> typing.Any:
        """Resolves an artifact address through the ledger, never through literals."""
        return resolver.artifact_address(self.name, attribute=self.attribute)


class Encode(Variable):
    ENCODE_PREFIX = "encode:"

    def __init__(self, variable: str, context: VariableContext):
        variable = variable[len(self.ENCODE_PREFIX) :]
        if not context.contract_name:
            raise InvalidPlanError(f"Cannot encode '{variable}' without a contract.")
        elements = variable.split(",")
        self.method_name = elements[0]
        self.method_args = [process_raw_value(arg, context) for arg in elements[1:]]
        self.contract_name = context.contract_name

    @classmethod
    def is_encode(cls, value: str) -> bool:
        """Returns True if the variable is a call that needs encoding to bytes."""
        return value.startswith(cls.ENCODE_PREFIX)

    def references(self) -> typing.Set[str]:
        return collect_references(self.method_args)

    async def resolve(self, resolver: Resolver) -> typing.Any:
        if resolver.executor is None:
            return "0x"
        args = [await resolve_param(arg, resolver) for arg in self.method_args]
        encoded = await resolver.executor.encode_call(self.contract_name, self.method_name, args)
        return to_hex(encoded)


def _variable_from_value(variable: str, context: VariableContext) -> Variable:
    variable = variable[len(Variable.VARIABLE_PREFIX) :]
    if DeployerAccount.is_deployer(variable):
        return DeployerAccount()
    elif Encode.is_encode(variable):
        return Encode(variable, context)
    elif Constant.is_constant(variable, context):
        return Constant(variable, context)
    else:
        return ArtifactReference(variable, context)


def process_raw_value(value: typing.Any, context: VariableContext) -> typing.Any:
    if isinstance(value, list):
        return [process_raw_value(v, context) for v in value]
    if isinstance(value, dict):
        return {k: process_raw_value(v, context) for k, v in value.items()}

    if Variable.is_variable(value):
        value = _variable_from_value(value, context)

    return value


def collect_references(value: typing.Any) -> typing.Set[str]:
    """Artifact names referenced by a processed value."""
    if isinstance(value, list):
        return set().union(*(collect_references(v) for v in value)) if value else set()
    if isinstance(value, dict):
        return collect_references(list(value.values()))
    if isinstance(value, Variable):
        return value.references()
    return set()


async def resolve_param(value: typing.Any, resolver: Resolver) -> typing.Any:
    """Resolves a single parameter value, a list or a mapping of values."""
    if isinstance(value, list):
        return [await resolve_param(v, resolver) for v in value]
    if isinstance(value, dict):
        return {k: await resolve_param(v, resolver) for k, v in value.items()}

    if isinstance(value, Variable):
        return await value.resolve(resolver)

    return value  # literally a value
