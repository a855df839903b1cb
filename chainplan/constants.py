from pathlib import Path

import chainplan

#
# Filesystem
#

PACKAGE_DIR = Path(chainplan.__file__).parent
PLANS_DIR = PACKAGE_DIR / "plans"
ARTIFACTS_DIR = PACKAGE_DIR / "artifacts"
LEDGER_DIR = PACKAGE_DIR / "ledger"

LEDGER_FILE_SUFFIX = ".jsonl"

#
# Environment
#

LEDGER_DIR_ENVVAR = "CHAINPLAN_LEDGER_DIR"
MAX_ATTEMPTS_ENVVAR = "CHAINPLAN_MAX_ATTEMPTS"
CONCURRENCY_ENVVAR = "CHAINPLAN_CONCURRENCY"
CONFIRMATIONS_ENVVAR = "CHAINPLAN_CONFIRMATIONS"
STEP_TIMEOUT_ENVVAR = "CHAINPLAN_STEP_TIMEOUT"

#
# Run defaults
#

DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_CONCURRENCY = 2
DEFAULT_CONFIRMATIONS = 1
DEFAULT_STEP_TIMEOUT = 600.0  # seconds

DEFAULT_BACKOFF_BASE = 2.0  # seconds
DEFAULT_BACKOFF_FACTOR = 2.0
DEFAULT_BACKOFF_MAX = 60.0  # seconds
DEFAULT_BACKOFF_JITTER = 0.25  # fraction of the delay

#
# Networks
#

LOCAL_NETWORKS = ("local", "development", "hardhat", "anvil", "foundry")

#
# Contracts
#

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

TRANSPARENT_PROXY = "TransparentUpgradeableProxy"
ERC1967_PROXY = "ERC1967Proxy"
PROXY_ADMIN = "ProxyAdmin"

PROXY_KIND_TRANSPARENT = "transparent"
PROXY_KIND_UUPS = "uups"
PROXY_KINDS = (PROXY_KIND_TRANSPARENT, PROXY_KIND_UUPS)

# EIP1967 slots - https://eips.ethereum.org/EIPS/eip-1967
EIP1967_ADMIN_SLOT = 0xB53127684A568B3173AE13B9F8A6016E243E63B6E8EE1178D6A717850B5D6103
EIP1967_IMPLEMENTATION_SLOT = 0x360894A13BA1A3210667C828492DB98DCA3E2076CC3735A920A3CA505D382BBC

#
# Submission labels
#

IMPLEMENTATION_LABEL = "implementation"
PROXY_LABEL = "proxy"
UPGRADE_LABEL = "upgrade"
CONTRACT_LABEL = "contract"
CALL_LABEL = "call"
