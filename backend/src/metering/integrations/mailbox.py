"""Read-only access to the admin mailbox for alert opt-out replies."""
import asyncio
import email
import imaplib
from dataclasses import dataclass
from email.header import decode_header, make_header
from email.message import Message
from typing import Protocol

import structlog

from metering.config import Settings

logger = structlog.get_logger(__name__)

SNIPPET_LENGTH = 200


@dataclass(frozen=True)
class InboundMail:
    """Subject and leading body text of one inbound message."""

    subject: str
    snippet: str


class MailboxReader(Protocol):
    async def recent_inbound(self, limit: int) -> list[InboundMail]:
        """Return the newest ``limit`` inbound messages, newest first."""
        ...


class ImapMailboxReader:
    """Fetches recent INBOX messages over IMAP (SSL)."""

    def __init__(self, host: str, port: int, username: str, password: str):
        self.host = host
        self.port = port
        self.username = username
        self.password = password

    @classmethod
    def from_settings(cls, settings: Settings) -> "ImapMailboxReader | None":
        """Build a reader when the admin mailbox is configured, else None."""
        if not settings.admin_imap_host or not settings.admin_imap_username:
            return None
        return cls(
            host=settings.admin_imap_host,
            port=settings.admin_imap_port,
            username=settings.admin_imap_username,
            password=settings.admin_imap_password,
        )

    async def recent_inbound(self, limit: int) -> list[InboundMail]:
        return await asyncio.to_thread(self._fetch, limit)

    def _fetch(self, limit: int) -> list[InboundMail]:
        with imaplib.IMAP4_SSL(self.host, self.port) as conn:
            conn.login(self.username, self.password)
            conn.select("INBOX", readonly=True)
            status, data = conn.search(None, "ALL")
            if status != "OK":
                raise imaplib.IMAP4.error(f"IMAP search failed: {status}")

            message_ids = data[0].split()[-limit:]
            mails = []
            for message_id in reversed(message_ids):
                status, parts = conn.fetch(message_id, "(BODY.PEEK[])")
                if status != "OK" or not parts or not isinstance(parts[0], tuple):
                    logger.debug("imap_fetch_skipped", message_id=message_id.decode())
                    continue
                mails.append(_to_inbound(email.message_from_bytes(parts[0][1])))
            return mails


def _to_inbound(message: Message) -> InboundMail:
    subject = str(make_header(decode_header(message.get("Subject", ""))))
    return InboundMail(subject=subject, snippet=_plain_text(message)[:SNIPPET_LENGTH])


def _plain_text(message: Message) -> str:
    parts = message.walk() if message.is_multipart() else [message]
    for part in parts:
        if part.get_content_type() == "text/plain":
            payload = part.get_payload(decode=True) or b""
            charset = part.get_content_charset() or "utf-8"
            return payload.decode(charset, errors="replace").strip()
    return ""
