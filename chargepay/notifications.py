from __future__ import annotations

import asyncio
import logging
import smtplib
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from email.message import EmailMessage
from typing import Optional

from .errors import NotificationFailed


@dataclass
class Receipt:
    transaction_id: str
    email: str
    station_id: str
    energy_kwh: Decimal
    cost: Decimal
    prepaid: Decimal
    refund: Decimal
    currency: str
    start_time: datetime
    end_time: datetime
    refund_id: Optional[str] = None

    def render(self) -> str:
        cur = self.currency.upper()
        lines = [
            f"Charging session {self.transaction_id}",
            f"Station: {self.station_id}",
            f"Started: {self.start_time:%Y-%m-%d %H:%M:%S %Z}",
            f"Finished: {self.end_time:%Y-%m-%d %H:%M:%S %Z}",
            f"Energy delivered: {self.energy_kwh:.2f} kWh",
            f"Prepaid: {self.prepaid:.2f} {cur}",
            f"Cost: {self.cost:.2f} {cur}",
            f"Refund: {self.refund:.2f} {cur}",
        ]
        if self.refund > 0 and self.refund_id is None:
            lines.append("Your refund is being processed and will follow separately.")
        return "\n".join(lines) + "\n"


class LogReceiptNotifier:
    """Writes receipts to the log; used when no SMTP server is configured."""

    async def send_receipt(self, receipt: Receipt) -> bool:
        logging.info(f"Receipt for {receipt.email}:\n{receipt.render()}")
        return True


class SmtpReceiptNotifier:
    def __init__(
        self,
        host: str,
        port: int = 587,
        sender: str = "receipts@chargepay.local",
        username: str = "",
        password: str = "",
        starttls: bool = True,
        timeout: float = 15.0,
    ):
        self.host = host
        self.port = port
        self.sender = sender
        self.username = username
        self.password = password
        self.starttls = starttls
        self.timeout = timeout

    def _build(self, receipt: Receipt) -> EmailMessage:
        msg = EmailMessage()
        msg["Subject"] = f"Charging receipt {receipt.transaction_id[:8]}"
        msg["From"] = self.sender
        msg["To"] = receipt.email
        msg.set_content(receipt.render())
        return msg

    def _send(self, msg: EmailMessage) -> None:
        with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as smtp:
            if self.starttls:
                smtp.starttls()
            if self.username:
                smtp.login(self.username, self.password)
            smtp.send_message(msg)

    async def send_receipt(self, receipt: Receipt) -> bool:
        msg = self._build(receipt)
        try:
            # smtplib blocks; keep it off the event loop
            await asyncio.to_thread(self._send, msg)
        except (smtplib.SMTPException, OSError) as e:
            raise NotificationFailed(f"receipt to {receipt.email} failed: {e}") from e
        logging.info(f"Receipt {receipt.transaction_id} sent to {receipt.email}")
        return True
