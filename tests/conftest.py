from __future__ import annotations

from typing import Generator

import pytest

from ledger_analytics.target import Target
from tests.helpers.fake_ledger import FakeLedger
from tests.helpers.fake_warehouse import FakeWarehouse


@pytest.fixture()
def warehouse() -> FakeWarehouse:
    return FakeWarehouse()


@pytest.fixture()
def target(warehouse: FakeWarehouse) -> Target:
    return Target.open(warehouse)  # type: ignore[arg-type]


@pytest.fixture()
def ledger() -> FakeLedger:
    return FakeLedger()


@pytest.fixture()
def ledger_client(ledger: FakeLedger) -> Generator:
    client = ledger.client()
    try:
        yield client
    finally:
        client.close()
