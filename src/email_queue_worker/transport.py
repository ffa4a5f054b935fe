# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""SMTP mail transport built on aiosmtplib.

Implements the ``MailTransport`` protocol: every send opens a connection,
optionally authenticates, delivers one message and quits.

TLS behavior based on port and ``use_tls``:
- Port 465 with use_tls=True: direct TLS (implicit TLS)
- Other ports with use_tls=True: STARTTLS
- use_tls=False: plain SMTP

SMTP rejections are returned as ``SendResult(success=False)`` carrying the
server reply (``550 5.1.1 ...``) so that the error classifier can see the
enhanced status code. Connection and timeout errors propagate unchanged.

Example:
    Sending one message::

        transport = SmtpTransport(host="smtp.example.com", port=587,
                                  user="shop", password="secret",
                                  use_tls=True, sender="shop@example.com")
        result = await transport.send(OutgoingEmail(to=..., subject=..., html=..., locale="en"))
"""

from __future__ import annotations

import asyncio
from email.message import EmailMessage
from email.utils import make_msgid

import aiosmtplib

from .collaborators import OutgoingEmail, SendResult
from .logger import get_logger


class SmtpTransport:
    """One-connection-per-message SMTP sender.

    Attributes:
        host: SMTP server hostname.
        port: SMTP server port.
        sender: From address of every message.
        timeout: Seconds allowed for connect+login and for the send itself.
    """

    def __init__(
        self,
        *,
        host: str,
        port: int = 587,
        user: str | None = None,
        password: str | None = None,
        use_tls: bool | None = None,
        sender: str,
        timeout: float = 30.0,
        logger=None,
    ):
        self.host = host
        self.port = int(port)
        self.user = user
        self.password = password
        self.use_tls = self.port == 465 if use_tls is None else bool(use_tls)
        self.sender = sender
        self.timeout = float(timeout)
        self.logger = logger or get_logger("SmtpTransport")

    def _client(self) -> aiosmtplib.SMTP:
        if self.use_tls and self.port == 465:
            return aiosmtplib.SMTP(hostname=self.host, port=self.port, start_tls=False, use_tls=True, timeout=10.0)
        if self.use_tls:
            return aiosmtplib.SMTP(hostname=self.host, port=self.port, start_tls=True, use_tls=False, timeout=10.0)
        return aiosmtplib.SMTP(hostname=self.host, port=self.port, start_tls=False, use_tls=False, timeout=10.0)

    def build_message(self, message: OutgoingEmail) -> EmailMessage:
        msg = EmailMessage()
        msg["From"] = self.sender
        msg["To"] = message.to
        msg["Subject"] = message.subject
        msg["Message-ID"] = make_msgid(domain=self.sender.rpartition("@")[2] or None)
        msg["Content-Language"] = message.locale
        msg.set_content(message.html, subtype="html")
        for attachment in message.attachments:
            maintype, _, subtype = attachment.mime_type.partition("/")
            msg.add_attachment(
                attachment.content,
                maintype=maintype or "application",
                subtype=subtype or "octet-stream",
                filename=attachment.filename,
            )
        return msg

    async def send(self, message: OutgoingEmail) -> SendResult:
        msg = self.build_message(message)
        smtp = self._client()

        async def _do_connect():
            await smtp.connect()
            if self.user and self.password:
                await smtp.login(self.user, self.password)

        try:
            await asyncio.wait_for(_do_connect(), timeout=self.timeout)
            await asyncio.wait_for(smtp.send_message(msg), timeout=self.timeout)
        except aiosmtplib.SMTPResponseException as exc:
            self.logger.warning("SMTP server rejected message to %s: %s %s", message.to, exc.code, exc.message)
            return SendResult(success=False, error=f"{exc.code} {exc.message}")
        finally:
            if smtp.is_connected:
                try:
                    await smtp.quit()
                except aiosmtplib.SMTPException as exc:
                    self.logger.debug("SMTP quit failed: %s", exc)
        return SendResult(success=True, message_id=msg["Message-ID"])
