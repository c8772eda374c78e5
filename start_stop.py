import argparse
import json
import os
from typing import Optional

import requests

API_BASE = os.getenv("CHARGEPAY_API", "http://127.0.0.1:8080")


def _do_json(method: str, url: str, body: Optional[dict] = None) -> requests.Response:
    headers = {
        "Content-Type": "application/json",
        "Connection": "close",
    }
    data = json.dumps(body) if body is not None else None
    resp = requests.request(method, url, data=data, headers=headers, timeout=15)
    print(f"{method} {url} -> {resp.status_code} {resp.reason}")
    print(resp.text)
    return resp


def pay(station_id: str, amount: float, connector_id: Optional[str], email: Optional[str]) -> None:
    payload = {"stationId": station_id, "amount": int(round(amount * 100))}
    if connector_id is not None:
        payload["connectorId"] = connector_id
    if email is not None:
        payload["email"] = email
    _do_json("POST", f"{API_BASE}/api/v1/payment-intents", payload)


def start_charge(station_id: str, connector_id: Optional[str]) -> None:
    payload = {"connectorId": connector_id} if connector_id is not None else None
    _do_json("POST", f"{API_BASE}/api/v1/start/{station_id}", payload)


def stop_charge(station_id: str, email: Optional[str]) -> None:
    payload = {"email": email} if email is not None else None
    _do_json("POST", f"{API_BASE}/api/v1/stop/{station_id}", payload)


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Drive a prepaid charging session via HTTP API")
    sub = parser.add_subparsers(dest="cmd", required=True)

    p_pay = sub.add_parser("pay", help="prepay and open a pending session")
    p_pay.add_argument("stationId")
    p_pay.add_argument("amount", type=float, help="amount in major currency units, e.g. 50.00")
    p_pay.add_argument("--connector")
    p_pay.add_argument("--email")

    p_start = sub.add_parser("start", help="start charging")
    p_start.add_argument("stationId")
    p_start.add_argument("--connector")

    p_stop = sub.add_parser("stop", help="stop charging and settle")
    p_stop.add_argument("stationId")
    p_stop.add_argument("--email")

    p_energy = sub.add_parser("energy", help="show live energy and cost")
    p_energy.add_argument("stationId")

    p_station = sub.add_parser("station", help="show station with connector status")
    p_station.add_argument("stationId")

    p_conn = sub.add_parser("connector", help="set operator status of a connector")
    p_conn.add_argument("connectorId")
    p_conn.add_argument("status", choices=["AVAILABLE", "FAULTED", "UNAVAILABLE"])

    return parser.parse_args()


def main() -> None:
    args = parse_args()
    if args.cmd == "pay":
        pay(args.stationId, args.amount, args.connector, args.email)
    elif args.cmd == "start":
        start_charge(args.stationId, args.connector)
    elif args.cmd == "stop":
        stop_charge(args.stationId, args.email)
    elif args.cmd == "energy":
        _do_json("GET", f"{API_BASE}/api/v1/energy/{args.stationId}")
    elif args.cmd == "station":
        _do_json("GET", f"{API_BASE}/api/v1/stations/{args.stationId}")
    elif args.cmd == "connector":
        _do_json("PUT", f"{API_BASE}/api/v1/connectors/{args.connectorId}", {"status": args.status})


if __name__ == "__main__":
    main()
