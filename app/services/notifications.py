"""Order notifications to the shop admin."""

import asyncio
import smtplib
from abc import ABC, abstractmethod
from email.mime.text import MIMEText
from typing import Any

from app.core.config import get_settings
from app.core.logging import get_logger

log = get_logger(__name__)


class Notifier(ABC):
    @abstractmethod
    async def notify_order(self, order: dict[str, Any]) -> None:
        ...


class LogNotifier(Notifier):
    """Used when SMTP is not configured: the order only lands in the logs."""

    async def notify_order(self, order: dict[str, Any]) -> None:
        log.info("order_received", order=order)


class SmtpNotifier(Notifier):
    def __init__(self, host: str, port: int, user: str, password: str, sender: str, recipient: str) -> None:
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.sender = sender or user
        self.recipient = recipient

    def _build_message(self, order: dict[str, Any]) -> MIMEText:
        addr = order.get("address") or {}
        totals = order.get("totals") or {}
        lines = [
            "New book order",
            "",
            f"Customer: {order.get('user_email') or '-'} ({order.get('user_id') or '-'})",
            f"Material: {order.get('material')}",
            f"Quantity: {order.get('quantity')}",
            f"Payment method: {order.get('payment_method')}",
            f"Total: {totals.get('amount_total')} {totals.get('currency') or ''}".rstrip(),
            "",
            "Ship to:",
            f"  {addr.get('full_name', '')}",
            f"  {addr.get('line1', '')}",
        ]
        if addr.get("line2"):
            lines.append(f"  {addr['line2']}")
        lines += [
            f"  {addr.get('zip', '')} {addr.get('city', '')}",
            f"  {addr.get('country', '')}",
            f"  Phone: {addr.get('phone', '')}",
        ]
        if addr.get("notes"):
            lines += ["", f"Notes: {addr['notes']}"]
        if order.get("stripe_session_id"):
            lines += ["", f"Stripe session: {order['stripe_session_id']}"]
        msg = MIMEText("\n".join(lines), "plain", "utf-8")
        msg["Subject"] = f"New order: {order.get('material')} x{order.get('quantity')}"
        msg["From"] = self.sender
        msg["To"] = self.recipient
        return msg

    def _send(self, msg: MIMEText) -> None:
        with smtplib.SMTP_SSL(self.host, self.port, timeout=30) as server:
            if self.user:
                server.login(self.user, self.password)
            server.send_message(msg)

    async def notify_order(self, order: dict[str, Any]) -> None:
        msg = self._build_message(order)
        await asyncio.to_thread(self._send, msg)
        log.info("order_email_sent", to=self.recipient, session_id=order.get("stripe_session_id"))


def get_notifier() -> Notifier:
    s = get_settings()
    if not s.smtp_host or not s.admin_orders_email:
        return LogNotifier()
    return SmtpNotifier(
        host=s.smtp_host,
        port=s.smtp_port,
        user=s.smtp_user,
        password=s.smtp_password,
        sender=s.smtp_from,
        recipient=s.admin_orders_email,
    )
