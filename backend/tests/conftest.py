import os
import sys
from decimal import Decimal
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

# Ensure the backend package is importable
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

os.environ.setdefault('WASHMAP_STORE', 'memory')

from washmap.core.planner import PlanRequest, create_plan  # noqa: E402  pylint: disable=wrong-import-position
from washmap.db.memory_repository import InMemoryRepository  # noqa: E402
from washmap.db.store import set_repository  # noqa: E402
from washmap.main import app  # noqa: E402
from washmap.services.maps import MapSpec, create_map  # noqa: E402

ROOT_ADDRESS = '0x' + 'a' * 40


class SequentialAddresses:
    """Address provider handing out distinct EVM-style addresses."""

    def __init__(self, start=1):
        self._next = start
        self.requested = []

    def allocate(self, count):
        self.requested.append(count)
        addresses = ['0x' + format(self._next + offset, '040x') for offset in range(count)]
        self._next += count
        return addresses


@pytest.fixture()
def repository():
    repo = InMemoryRepository()
    set_repository(repo)
    yield repo
    set_repository(None)


@pytest.fixture()
def addresses():
    return SequentialAddresses()


@pytest.fixture()
def client(repository):
    return TestClient(app)


@pytest.fixture()
def planned(repository, addresses):
    """Build a stored map and plan a campaign over it."""

    def _planned(
        branching=2,
        depth=2,
        total='10000',
        decimals=0,
        gas='0',
        map_type='fan_out',
        enabled=True,
        max_attempts=3,
        root_address=ROOT_ADDRESS,
    ):
        record, _ = create_map(
            repository,
            MapSpec(
                project_id=1,
                root_address=root_address,
                branching=branching,
                depth=depth,
                map_type=map_type,
            ),
            addresses,
        )
        return create_plan(
            repository,
            record.id,
            PlanRequest(
                token='sol',
                decimals=decimals,
                gas=Decimal(gas),
                total_amount=Decimal(total),
                enabled=enabled,
                max_attempts=max_attempts,
            ),
        )

    return _planned
