import json
import logging
import typing
from collections import defaultdict
from pathlib import Path

from eth_typing import ChecksumAddress
from eth_utils import to_checksum_address

from chainplan.models import Artifact, ArtifactName, ChainId

logger = logging.getLogger(__name__)

STANDARD_REGISTRY_JSON_FORMAT = {"indent": 4, "separators": (",", ": ")}


class RegistryEntry(typing.NamedTuple):
    """Represents a single deployed artifact in a registry."""

    chain_id: ChainId
    name: ArtifactName
    address: ChecksumAddress
    kind: str
    contract: str
    implementation: typing.Optional[ChecksumAddress]
    generation: int
    tx_hash: typing.Optional[str]
    step_id: str


def _get_entry(artifact: Artifact) -> RegistryEntry:
    entry = RegistryEntry(
        chain_id=artifact.chain_id,
        name=artifact.name,
        address=to_checksum_address(artifact.address),
        kind=artifact.kind.value,
        contract=artifact.contract,
        implementation=artifact.implementation,
        generation=artifact.generation,
        tx_hash=artifact.tx_hash,
        step_id=artifact.produced_by,
    )
    return entry


def _get_entries(artifacts: typing.Iterable[Artifact]) -> typing.List[RegistryEntry]:
    """Returns a list of registry entries from a list of artifacts."""
    return [_get_entry(artifact) for artifact in artifacts]


def _load_json(filepath: Path) -> dict:
    """Loads a JSON file."""
    with open(filepath, "r") as file:
        return json.load(file)


def read_registry(filepath: Path) -> typing.List[RegistryEntry]:
    data = _load_json(filepath)
    registry_entries = list()
    for chain_id, entries in data.items():
        for name, artifact in entries.items():
            registry_entry = RegistryEntry(
                chain_id=int(chain_id),
                name=name,
                address=artifact["address"],
                kind=artifact.get("kind", "contract"),
                contract=artifact.get("contract", name),
                implementation=artifact.get("implementation"),
                generation=int(artifact.get("generation", 1)),
                tx_hash=artifact.get("tx_hash"),
                step_id=artifact.get("step_id", ""),
            )
            registry_entries.append(registry_entry)
    return registry_entries


def write_registry(entries: typing.List[RegistryEntry], filepath: Path) -> Path:
    """
    Writes a registry file. Chains present in the entries replace the same chains in an
    existing file; other chains in the file are kept.
    """
    if not entries:
        logger.info("No registry entries provided.")
        return filepath

    # Sort registry entries to enforce common order
    entries = sorted(entries, key=lambda entry: (str(entry.chain_id), entry.name))

    data = defaultdict(dict)
    for entry in entries:
        data[str(entry.chain_id)][entry.name] = {
            "address": entry.address,
            "kind": entry.kind,
            "contract": entry.contract,
            "implementation": entry.implementation,
            "generation": int(entry.generation),
            "tx_hash": entry.tx_hash,
            "step_id": entry.step_id,
        }

    # Create the parent directory if it does not exist
    filepath.parent.mkdir(parents=True, exist_ok=True)

    if filepath.exists():
        logger.info("Updating existing registry at %s.", filepath)
        existing_data = _load_json(filepath)
        existing_data.update(data)
        data = existing_data
    else:
        logger.info("Creating new registry at %s.", filepath)

    data = dict(sorted(data.items(), key=lambda item: int(item[0])))
    with open(filepath, "w") as file:
        json.dump(data, file, **STANDARD_REGISTRY_JSON_FORMAT)

    return filepath


def registry_from_artifacts(artifacts: typing.Iterable[Artifact], output_filepath: Path) -> Path:
    """Creates a registry from the artifacts recorded in a ledger."""
    entries = _get_entries(artifacts)
    output_filepath = write_registry(entries=entries, filepath=output_filepath)
    logger.info("Registry written to %s", output_filepath)
    return output_filepath


def external_from_registry(
    filepath: Path, chain_id: ChainId
) -> typing.Dict[ArtifactName, ChecksumAddress]:
    """Artifact addresses of one chain in a registry, for use as external artifacts."""
    return {
        entry.name: to_checksum_address(entry.address)
        for entry in read_registry(filepath)
        if entry.chain_id == chain_id
    }
