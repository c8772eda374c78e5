"""Demo stations for running without an inventory database."""

from __future__ import annotations

import logging
from decimal import Decimal

from .models import Connector, ConnectorStatus, Station
from .store import SessionStore

DEMO_STATIONS = [
    {
        "id": "CP_001",
        "name": "Galeria Mokotów (HUB)",
        "address": "Wołoska 12",
        "city": "Warszawa",
        "latitude": 52.1800,
        "longitude": 21.0000,
        "connectors": [
            ("1", "CCS", 150, "2.90", ConnectorStatus.AVAILABLE),
            ("2", "CCS", 150, "2.90", ConnectorStatus.CHARGING),
            ("3", "Type2", 22, "1.50", ConnectorStatus.AVAILABLE),
        ],
    },
    {
        "id": "CP_002",
        "name": "Powiśle Parking",
        "address": "Dobra 56",
        "city": "Warszawa",
        "latitude": 52.2430,
        "longitude": 21.0280,
        "connectors": [
            ("4", "Type2", 11, "1.40", ConnectorStatus.AVAILABLE),
            ("5", "Type2", 11, "1.40", ConnectorStatus.AVAILABLE),
        ],
    },
    {
        "id": "CP_003",
        "name": "Wola Tower",
        "address": "Górczewska 124",
        "city": "Warszawa",
        "latitude": 52.2390,
        "longitude": 20.9340,
        "connectors": [
            ("6", "CCS", 50, "2.10", ConnectorStatus.AVAILABLE),
            ("7", "CHAdeMO", 50, "2.10", ConnectorStatus.AVAILABLE),
        ],
    },
    {
        "id": "CP_004",
        "name": "Wilanów Royal",
        "address": "Klimczaka 1",
        "city": "Warszawa",
        "latitude": 52.1600,
        "longitude": 21.0800,
        "connectors": [
            ("8", "CCS", 350, "3.50", ConnectorStatus.AVAILABLE),
            ("9", "CCS", 350, "3.50", ConnectorStatus.AVAILABLE),
            ("10", "CCS", 350, "3.50", ConnectorStatus.FAULTED),
            ("11", "CCS", 350, "3.50", ConnectorStatus.AVAILABLE),
        ],
    },
    {
        "id": "CP_005",
        "name": "Praga Koneser",
        "address": "Plac Konesera 2",
        "city": "Warszawa",
        "latitude": 52.2560,
        "longitude": 21.0450,
        "connectors": [
            ("12", "Type2", 22, "1.60", ConnectorStatus.AVAILABLE),
        ],
    },
]


async def seed_demo_data(store: SessionStore) -> int:
    for data in DEMO_STATIONS:
        prices = [Decimal(c[3]) for c in data["connectors"]]
        types = {c[1] for c in data["connectors"]}
        await store.add_station(
            Station(
                id=data["id"],
                name=data["name"],
                address=data["address"],
                city=data["city"],
                latitude=data["latitude"],
                longitude=data["longitude"],
                # mean connector price as the station default
                price_per_kwh=(sum(prices) / len(prices)).quantize(Decimal("0.01")),
                connector_type=types.pop() if len(types) == 1 else "MIXED",
            )
        )
        for cid, ctype, power_kw, price, status in data["connectors"]:
            await store.add_connector(
                Connector(
                    id=cid,
                    station_id=data["id"],
                    type=ctype,
                    power_kw=power_kw,
                    price_per_kwh=Decimal(price),
                    status=status,
                )
            )
    logging.info(f"Seeded {len(DEMO_STATIONS)} demo stations")
    return len(DEMO_STATIONS)
