"""
Pytest configuration for gas-station tests.
"""
from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest

# Add package source to path
package_src = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(package_src))

# Set test environment
os.environ.setdefault("GAS_STATION_ENVIRONMENT", "dev")
os.environ.setdefault("GAS_STATION_MODE", "simulated")

from gas_station.authorization import Ed25519Signer, SignerRole
from gas_station.config import GasStationSettings, TimeoutConfig
from gas_station.pipeline import SponsoredTransactionPipeline
from gas_station.simulated import SimulatedGasStation, SimulatedLedger

SENDER_SEED = bytes([1]) * 32
SPONSOR_SEED = bytes([2]) * 32
SPONSOR_POOL_BALANCE = 1_000_000_000
SENDER_BALANCE = 1_000


@pytest.fixture(scope="session")
def anyio_backend():
    """Use asyncio for async tests."""
    return "asyncio"


@pytest.fixture
def user_signer() -> Ed25519Signer:
    """Deterministic wallet key for the sender."""
    return Ed25519Signer.from_seed(SENDER_SEED, SignerRole.USER)


@pytest.fixture
def sponsor_signer() -> Ed25519Signer:
    """Deterministic gas station key."""
    return Ed25519Signer.from_seed(SPONSOR_SEED, SignerRole.SPONSOR)


@pytest.fixture
def recipient() -> str:
    """Valid recipient address for testing."""
    return "0x" + "cd" * 32


@pytest.fixture
def settings() -> GasStationSettings:
    return GasStationSettings(
        _env_file=None,
        mode="simulated",
        move_package_id="0x2",
        timeouts=TimeoutConfig(),
    )


@pytest.fixture
def ledger() -> SimulatedLedger:
    return SimulatedLedger()


@pytest.fixture
def gas_station(ledger, sponsor_signer) -> SimulatedGasStation:
    """Simulated gas station with two funded fee coins."""
    station = SimulatedGasStation(ledger, sponsor_signer)
    station.fund(SPONSOR_POOL_BALANCE, count=2)
    return station


@pytest.fixture
def sender_coin(ledger, user_signer):
    """Single native coin owned by the sender."""
    return ledger.mint(user_signer.address, SENDER_BALANCE)


@pytest.fixture
def pipeline(ledger, gas_station, settings) -> SponsoredTransactionPipeline:
    return SponsoredTransactionPipeline(ledger, gas_station, settings)
