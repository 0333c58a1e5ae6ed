import hashlib
import importlib.util
from pathlib import Path

import contracting
import pytest
from contracting.client import ContractingClient
from contracting.compilation import whitelists
from contracting.stdlib.bridge.time import Datetime

PROJECT_ROOT = Path(__file__).resolve().parents[1]
LENDING_PATH = PROJECT_ROOT / "con_compute_lending.py"
GATEWAY_PATH = PROJECT_ROOT / "con_fhe_gateway.py"
HELPER_PATH = PROJECT_ROOT / "client_helper.py"
SUBMISSION_PATH = (
    Path(contracting.__file__).resolve().parent / "contracts" / "submission.s.py"
)

COOLDOWN = 60


@pytest.fixture(scope="session", autouse=True)
def enable_sha3_and_whitelist():
    whitelists.ALLOWED_BUILTINS.update({"hashlib", "decimal"})

    if not hasattr(hashlib, "sha3"):
        def _sha3(data):
            if isinstance(data, str):
                data = data.encode("utf-8")
            return hashlib.sha3_256(data).hexdigest()

        setattr(hashlib, "sha3", _sha3)


@pytest.fixture(scope="session")
def helper_module():
    spec = importlib.util.spec_from_file_location("client_helper_tests", HELPER_PATH)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


@pytest.fixture(scope="session")
def keypair(helper_module):
    return helper_module.generate_keypair()


@pytest.fixture
def oracle(helper_module, keypair):
    return helper_module.DecryptionOracle(keypair)


@pytest.fixture
def at():
    """Environment pinning `now` to a number of seconds after a fixed epoch."""
    def _at(seconds):
        assert 0 <= seconds < 86400
        return {
            "now": Datetime(
                2025, 1, 1,
                hour=seconds // 3600,
                minute=(seconds % 3600) // 60,
                second=seconds % 60,
            )
        }

    return _at


@pytest.fixture
def client():
    client = ContractingClient(signer="operator", metering=False)
    client.flush()
    client.set_submission_contract(str(SUBMISSION_PATH))
    return client


@pytest.fixture
def gateway(client, keypair, oracle):
    client.submit(
        GATEWAY_PATH.read_text(),
        name="con_fhe_gateway",
        owner=None,
        constructor_args={
            "public_key": keypair.public_key,
            "oracle_vk": oracle.verify_key,
            "oracle": "oracle",
        },
    )
    return client.get_contract("con_fhe_gateway")


@pytest.fixture
def contract(client, gateway):
    client.submit(
        LENDING_PATH.read_text(),
        name="con_compute_lending",
        owner=None,
        constructor_args={"fhe_gateway": "con_fhe_gateway", "cooldown": COOLDOWN},
    )
    gateway.set_requester(contract="con_compute_lending", allowed=True)
    return client.get_contract("con_compute_lending")
