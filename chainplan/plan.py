import typing
from collections import OrderedDict
from pathlib import Path

import yaml
from eth_utils import is_address, to_checksum_address

from chainplan.constants import ARTIFACTS_DIR, PROXY_KIND_TRANSPARENT, PROXY_KINDS
from chainplan.errors import InvalidPlanError, PlanError
from chainplan.graph import StepGraph
from chainplan.models import ChainId, Step, StepKind
from chainplan.params import (
    ArtifactReference,
    Variable,
    VariableContext,
    collect_references,
    process_raw_value,
)
from chainplan.registry import external_from_registry

VERIFY_SUFFIX = ".verify"

# keys describing the step itself; everything else is the kind-specific payload
STEP_KEYS = ("id", "kind", "produces", "depends_on", "verify", "critical")

REQUIRED_PARAMS = {
    StepKind.DEPLOY: ("contract",),
    StepKind.DEPLOY_PROXY: ("contract",),
    StepKind.UPGRADE_PROXY: ("contract", "target"),
    StepKind.CALL: ("target", "function"),
    StepKind.GRANT_ROLE: ("target", "role", "account"),
    StepKind.VERIFY: ("target",),
}

VERIFIABLE_KINDS = (StepKind.DEPLOY, StepKind.DEPLOY_PROXY, StepKind.UPGRADE_PROXY)


def _load_yaml(filepath: Path) -> dict:
    """Loads a YAML file."""
    with open(filepath, "r") as file:
        return yaml.safe_load(file)


def _target_name(step_id: str, target: typing.Any) -> str:
    """The artifact name behind a '$Name' target."""
    if not Variable.is_variable(target):
        raise InvalidPlanError(f"Step '{step_id}' target must be an artifact reference like $Name.")
    name = target[len(Variable.VARIABLE_PREFIX) :]
    name, _, attribute = name.partition(ArtifactReference.ATTRIBUTE_DELIMITER)
    if attribute:
        raise InvalidPlanError(f"Step '{step_id}' target cannot reference '.{attribute}'.")
    return name


def _validate_external(external: typing.Optional[dict]) -> typing.Dict[str, typing.Optional[str]]:
    result = OrderedDict()
    for name, address in (external or dict()).items():
        if address is None:
            result[name] = None  # resolved from the chain's ledger
            continue
        if not isinstance(address, str) or not is_address(address):
            raise InvalidPlanError(f"External artifact '{name}' has an invalid address: {address}")
        result[name] = to_checksum_address(address)
    return result


class DeploymentPlan:
    """A declarative list of steps for one chain, loaded from YAML."""

    def __init__(
        self,
        name: str,
        chain_id: ChainId,
        steps: typing.List[Step],
        external: typing.Optional[typing.Dict[str, typing.Optional[str]]] = None,
        constants: typing.Optional[typing.Dict[str, typing.Any]] = None,
        settings: typing.Optional[typing.Dict[str, typing.Any]] = None,
        artifacts: typing.Optional[typing.Dict[str, typing.Any]] = None,
        path: typing.Optional[Path] = None,
    ):
        self.name = name
        self.chain_id = chain_id
        self.steps = steps
        self.external = external or OrderedDict()
        self.constants = constants or dict()
        self.settings = settings or dict()
        self.artifacts = artifacts or dict()
        self.path = path

    @classmethod
    def from_yaml(cls, filepath: Path) -> "DeploymentPlan":
        try:
            config = _load_yaml(filepath)
        except yaml.YAMLError as e:
            raise InvalidPlanError(f"Plan {filepath} is not valid YAML: {e}") from e
        return cls.from_config(config, path=filepath)

    @classmethod
    def from_config(
        cls, config: typing.Any, path: typing.Optional[Path] = None
    ) -> "DeploymentPlan":
        if not isinstance(config, dict):
            raise InvalidPlanError("Deployment plan must be a mapping.")

        deployment = config.get("deployment")
        if not deployment:
            raise InvalidPlanError("deployment is not set in plan file.")
        chain_id = deployment.get("chain_id")
        if not chain_id:
            raise InvalidPlanError("chain_id is not set in plan file.")
        try:
            chain_id = int(chain_id)
        except (TypeError, ValueError):
            raise InvalidPlanError(f"chain_id must be an integer, got {chain_id!r}.")

        raw_steps = config.get("steps")
        if not raw_steps or not isinstance(raw_steps, list):
            raise InvalidPlanError("Plan file missing 'steps' list.")

        external = _validate_external(config.get("external"))
        external_registry = config.get("external_registry")
        if external_registry:
            registry_path = Path(external_registry)
            if path and not registry_path.is_absolute():
                registry_path = path.parent / registry_path
            try:
                registry_external = external_from_registry(registry_path, chain_id)
            except (OSError, ValueError, KeyError) as e:
                raise InvalidPlanError(f"Cannot read external registry {registry_path}: {e}")
            for name, address in registry_external.items():
                external.setdefault(name, address)

        constants = config.get("constants") or dict()
        steps = _parse_steps(raw_steps, external=external, constants=constants)

        return cls(
            name=deployment.get("name") or (path.stem if path else "plan"),
            chain_id=chain_id,
            steps=steps,
            external=external,
            constants=constants,
            settings=config.get("settings") or dict(),
            artifacts=config.get("artifacts") or dict(),
            path=path,
        )

    def graph(self) -> StepGraph:
        return StepGraph.build(self.steps, external=self.external)

    def registry_filepath(self) -> typing.Optional[Path]:
        """Where the registry of this plan's chain is written, if anywhere."""
        if not self.artifacts:
            return None
        filename = self.artifacts.get("filename")
        if not filename:
            raise InvalidPlanError("artifact filename is not set in plan file.")
        return Path(self.artifacts.get("dir", ARTIFACTS_DIR)) / filename


def _produced_names(raw_steps: typing.List[typing.Any]) -> typing.Set[str]:
    names = set()
    for raw in raw_steps:
        if not isinstance(raw, dict):
            raise InvalidPlanError(f"Malformed step: {raw!r}")
        produces = raw.get("produces")
        if produces:
            names.add(produces)
        elif raw.get("contract") and raw.get("kind") in (
            StepKind.DEPLOY.value,
            StepKind.DEPLOY_PROXY.value,
        ):
            names.add(raw.get("contract"))
    return names


def _parse_steps(
    raw_steps: typing.List[typing.Any],
    external: typing.Dict[str, typing.Optional[str]],
    constants: typing.Dict[str, typing.Any],
) -> typing.List[Step]:
    artifact_names = _produced_names(raw_steps) | set(external)
    steps = list()
    for raw in raw_steps:
        step = _parse_step(raw, artifact_names=artifact_names, constants=constants)
        steps.append(step)
        if raw.get("verify"):
            steps.append(_verify_step_for(step))
    return steps


def _parse_step(
    raw: typing.Dict[str, typing.Any],
    artifact_names: typing.Set[str],
    constants: typing.Dict[str, typing.Any],
) -> Step:
    step_id = raw.get("id")
    if not step_id or not isinstance(step_id, str):
        raise InvalidPlanError(f"Step is missing an 'id': {raw!r}")
    try:
        kind = StepKind(raw.get("kind"))
    except ValueError:
        valid = ", ".join(k.value for k in StepKind)
        raise InvalidPlanError(f"Step '{step_id}' has unknown kind {raw.get('kind')!r} ({valid}).")

    params = OrderedDict((k, v) for k, v in raw.items() if k not in STEP_KEYS)
    for key in REQUIRED_PARAMS[kind]:
        if params.get(key) in (None, ""):
            raise InvalidPlanError(f"Step '{step_id}' ({kind.value}) requires '{key}'.")

    constructor = params.get("constructor")
    if constructor is not None and not isinstance(constructor, dict):
        raise InvalidPlanError(f"Malformed constructor parameters for step '{step_id}'.")

    produces = raw.get("produces")
    if kind in (StepKind.DEPLOY, StepKind.DEPLOY_PROXY):
        produces = produces or params["contract"]
    elif kind is StepKind.UPGRADE_PROXY:
        target = _target_name(step_id, params["target"])
        if produces and produces != target:
            raise InvalidPlanError(f"Upgrade step '{step_id}' must produce its target '{target}'.")
        produces = target
    elif produces:
        raise InvalidPlanError(f"Step '{step_id}' ({kind.value}) cannot produce an artifact.")
    else:
        _target_name(step_id, params["target"])

    if kind is StepKind.DEPLOY_PROXY:
        proxy = params.get("proxy") or dict()
        if not isinstance(proxy, dict):
            raise InvalidPlanError(f"Malformed proxy parameters for step '{step_id}'.")
        proxy_kind = proxy.get("kind", PROXY_KIND_TRANSPARENT)
        if proxy_kind not in PROXY_KINDS:
            raise InvalidPlanError(f"Step '{step_id}' has unknown proxy kind '{proxy_kind}'.")
    if kind is StepKind.UPGRADE_PROXY and params.get("proxy_kind") not in (None,) + PROXY_KINDS:
        raise InvalidPlanError(f"Step '{step_id}' has unknown proxy kind.")

    # parse every reference now so that typos fail before anything is sent
    context = VariableContext(
        artifact_names=artifact_names,
        contract_name=params.get("contract"),
        constants=constants,
    )
    try:
        processed = process_raw_value(dict(params), context)
    except PlanError as e:
        raise InvalidPlanError(f"Step '{step_id}': {e}") from e

    depends_on = raw.get("depends_on") or list()
    if isinstance(depends_on, str):
        depends_on = [depends_on]
    references = collect_references(processed)
    if produces in references and kind is not StepKind.UPGRADE_PROXY:
        raise InvalidPlanError(f"Step '{step_id}' references the artifact it produces.")

    return Step.create(
        id=step_id,
        kind=kind,
        depends_on=set(depends_on) | references,
        produces=produces,
        params=dict(params),
        critical=bool(raw.get("critical", False)),
    )


def _verify_step_for(step: Step) -> Step:
    if step.kind not in VERIFIABLE_KINDS:
        raise InvalidPlanError(f"Step '{step.id}' ({step.kind.value}) has nothing to verify.")
    params = {"target": f"{Variable.VARIABLE_PREFIX}{step.produces}"}
    params["contract"] = step.params["contract"]
    if step.params.get("constructor"):
        params["constructor"] = step.params["constructor"]
    return Step.create(
        id=f"{step.id}{VERIFY_SUFFIX}",
        kind=StepKind.VERIFY,
        depends_on={step.id, step.produces},
        produces=None,
        params=params,
    )
