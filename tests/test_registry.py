from decimal import Decimal

import pytest

from chargepay.errors import ConnectorNotFound, InvalidRequest, StationNotFound
from chargepay.models import Connector, ConnectorStatus, StationStatus, TransactionStatus
from chargepay.registry import StationRegistry, effective_status, station_status


def _connector(status=ConnectorStatus.AVAILABLE):
    return Connector(id="C9", station_id="ST1", type="CCS", power_kw=50, status=status)


def test_effective_status_fault_wins():
    assert effective_status(_connector(ConnectorStatus.FAULTED), {"C9"}) == ConnectorStatus.FAULTED
    assert effective_status(_connector(ConnectorStatus.UNAVAILABLE), set()) == ConnectorStatus.FAULTED


def test_effective_status_from_ledger():
    assert effective_status(_connector(), {"C9"}) == ConnectorStatus.CHARGING
    assert effective_status(_connector(), set()) == ConnectorStatus.AVAILABLE


def test_station_status_rules():
    assert station_status([ConnectorStatus.FAULTED], True) == StationStatus.CHARGING
    assert station_status([ConnectorStatus.FAULTED, ConnectorStatus.FAULTED], False) == StationStatus.FAULTED
    assert station_status([ConnectorStatus.FAULTED, ConnectorStatus.AVAILABLE], False) == StationStatus.AVAILABLE
    assert station_status([], False) == StationStatus.AVAILABLE


@pytest.mark.asyncio
async def test_station_view_derives_connector_status(store, make_pending):
    tx = await make_pending(connector_id="C1")
    await store.update_transaction(tx.id, status=TransactionStatus.CHARGING)

    view = await StationRegistry(store).station_view("ST1")
    statuses = {c.id: c.status for c in view.connectors}
    assert statuses == {
        "C1": ConnectorStatus.CHARGING,
        "C2": ConnectorStatus.AVAILABLE,
        "C3": ConnectorStatus.FAULTED,
    }
    assert view.status == StationStatus.CHARGING


@pytest.mark.asyncio
async def test_connector_price_falls_back_to_station(store):
    view = await StationRegistry(store).station_view("ST1")
    prices = {c.id: c.price_per_kwh for c in view.connectors}
    assert prices["C1"] == Decimal("2.50")
    assert prices["C2"] == Decimal("3.00")


@pytest.mark.asyncio
async def test_station_wide_session_does_not_mark_connectors(store, make_pending):
    await make_pending(connector_id=None)
    view = await StationRegistry(store).station_view("ST1")
    assert view.status == StationStatus.CHARGING
    assert all(c.status != ConnectorStatus.CHARGING for c in view.connectors)


@pytest.mark.asyncio
async def test_completed_session_frees_connector(store, make_pending):
    tx = await make_pending(connector_id="C1")
    await store.update_transaction(tx.id, status=TransactionStatus.COMPLETED)
    registry = StationRegistry(store)
    assert await registry.connector_status(await store.get_connector("C1")) == ConnectorStatus.AVAILABLE


@pytest.mark.asyncio
async def test_unknown_station(store):
    with pytest.raises(StationNotFound):
        await StationRegistry(store).station_view("NOPE")


@pytest.mark.asyncio
async def test_list_station_views_sorted_by_name(store):
    views = await StationRegistry(store).list_station_views()
    assert [v.name for v in views] == ["Another Site", "Test Hub"]
    assert views[0].to_dict()["connectors"][0]["id"] == "C4"


@pytest.mark.asyncio
async def test_operator_faults_and_restores_connector(store):
    registry = StationRegistry(store)

    assert await registry.set_connector_status("C1", "faulted") == ConnectorStatus.FAULTED
    assert (await store.get_connector("C1")).status == ConnectorStatus.FAULTED
    view = await registry.station_view("ST1")
    assert {c.id: c.status for c in view.connectors}["C1"] == ConnectorStatus.FAULTED

    assert await registry.set_connector_status("C3", ConnectorStatus.AVAILABLE) == ConnectorStatus.AVAILABLE


@pytest.mark.asyncio
async def test_operator_restore_keeps_ledger_status(store, make_pending):
    await make_pending(connector_id="C1")
    registry = StationRegistry(store)
    assert await registry.set_connector_status("C1", ConnectorStatus.AVAILABLE) == ConnectorStatus.CHARGING


@pytest.mark.asyncio
async def test_operator_status_validation(store):
    registry = StationRegistry(store)
    with pytest.raises(InvalidRequest):
        await registry.set_connector_status("C1", ConnectorStatus.CHARGING)
    with pytest.raises(ConnectorNotFound):
        await registry.set_connector_status("C99", ConnectorStatus.FAULTED)
