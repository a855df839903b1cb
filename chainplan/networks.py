import typing

from ape import networks

from chainplan.constants import LOCAL_NETWORKS


def is_local_network(network_name: typing.Optional[str] = None) -> bool:
    """Returns True for development networks, or the connected network by default."""
    if network_name is None:
        network_name = networks.provider.network.name
    return network_name in LOCAL_NETWORKS


def get_chain_name(chain_id: int) -> str:
    """Returns the name of the chain given its chain ID."""
    for ecosystem_name, ecosystem in networks.ecosystems.items():
        for network_name, network in ecosystem.networks.items():
            if network.chain_id == chain_id:
                return f"{ecosystem_name} {network_name}"
    raise ValueError(f"Chain ID {chain_id} not found in networks.")


def network_choice_for_chain(chain_id: int) -> str:
    """An ape network choice ('ecosystem:network') for a chain ID."""
    ecosystem_name, network_name = get_chain_name(chain_id).split(" ", 1)
    return f"{ecosystem_name}:{network_name}"
