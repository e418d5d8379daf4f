"""IMAP polling for inbound-email triggers.

Each poll opens one IMAP connection, fetches the messages matching the
trigger's search (unread by default), and returns them normalized.
Fetching the full message marks it ``\\Seen`` so the next poll skips it.
imaplib is blocking, so the fetch runs in the default executor.

Trigger config keys (falling back to ``IMAP_*`` settings):
    host, port, username, password, mailbox ("INBOX"),
    search ("UNSEEN"), maxMessages (20)
"""

import asyncio
import email
import imaplib
import logging
from email.header import decode_header
from email.message import Message
from email.utils import getaddresses, parsedate_to_datetime
from typing import Callable, Optional, Union

from app.config import Settings, get_settings
from core.exceptions import InfrastructureError, ValidationError

logger = logging.getLogger(__name__)

DEFAULT_MAILBOX = "INBOX"
DEFAULT_SEARCH = "UNSEEN"
DEFAULT_MAX_MESSAGES = 20

# (resolved config) -> raw RFC 822 messages
FetchFunc = Callable[[dict], list[bytes]]


def _decode_header(value: Optional[str]) -> str:
    if not value:
        return ""
    parts = []
    for chunk, charset in decode_header(value):
        if isinstance(chunk, bytes):
            parts.append(chunk.decode(charset or "utf-8", errors="replace"))
        else:
            parts.append(chunk)
    return "".join(parts)


def _text_body(message: Message) -> str:
    """First text/plain part, else the first text/html part."""
    fallback = ""
    parts = message.walk() if message.is_multipart() else [message]
    for part in parts:
        if part.get_content_maintype() != "text" or part.get_filename():
            continue
        payload = part.get_payload(decode=True) or b""
        text = payload.decode(part.get_content_charset() or "utf-8", errors="replace")
        if part.get_content_subtype() == "plain":
            return text.strip()
        if not fallback:
            fallback = text.strip()
    return fallback


def normalize_message(raw: Union[bytes, str, Message]) -> dict:
    """Inbound-email trigger payload for one message."""
    if isinstance(raw, Message):
        message = raw
    elif isinstance(raw, bytes):
        message = email.message_from_bytes(raw)
    else:
        message = email.message_from_string(raw)

    date = message.get("Date")
    try:
        date = parsedate_to_datetime(date).isoformat() if date else None
    except (TypeError, ValueError):
        pass

    return {
        "from": ", ".join(addr for _, addr in getaddresses([message.get("From", "")]) if addr),
        "to": [addr for _, addr in getaddresses(message.get_all("To", [])) if addr],
        "subject": _decode_header(message.get("Subject")),
        "text": _text_body(message),
        "messageId": (message.get("Message-ID") or "").strip() or None,
        "date": date,
    }


class InboxPoller:
    """Fetches new messages for inbound-email triggers."""

    def __init__(self, settings: Optional[Settings] = None, fetch: Optional[FetchFunc] = None):
        self.settings = settings or get_settings()
        self._fetch = fetch or self._fetch_imap

    def resolve_config(self, trigger_config: dict) -> dict:
        config = {
            "host": trigger_config.get("host") or self.settings.IMAP_HOST,
            "port": int(trigger_config.get("port") or self.settings.IMAP_PORT),
            "username": trigger_config.get("username") or self.settings.IMAP_USERNAME,
            "password": trigger_config.get("password") or self.settings.IMAP_PASSWORD,
            "mailbox": trigger_config.get("mailbox") or DEFAULT_MAILBOX,
            "search": trigger_config.get("search") or DEFAULT_SEARCH,
            "max_messages": int(trigger_config.get("maxMessages") or DEFAULT_MAX_MESSAGES),
        }
        if not config["host"] or not config["username"]:
            raise ValidationError("Inbound email trigger needs an IMAP host and username")
        return config

    async def poll(self, trigger_config: dict) -> list[dict]:
        """Fetch and normalize new messages.

        Raises:
            ValidationError: no IMAP account configured
            InfrastructureError: the IMAP server could not be reached
        """
        config = self.resolve_config(trigger_config)
        loop = asyncio.get_running_loop()
        try:
            raw_messages = await loop.run_in_executor(None, lambda: self._fetch(config))
        except (imaplib.IMAP4.error, OSError) as e:
            raise InfrastructureError(f"IMAP poll of {config['host']} failed: {e}") from e

        messages = []
        for raw in raw_messages:
            try:
                messages.append(normalize_message(raw))
            except Exception as e:
                logger.warning(f"Skipping unparseable message from {config['host']}: {e}")
        logger.info(f"Polled {config['username']}@{config['host']}: {len(messages)} new messages")
        return messages

    @staticmethod
    def _fetch_imap(config: dict) -> list[bytes]:
        client = imaplib.IMAP4_SSL(config["host"], config["port"])
        try:
            client.login(config["username"], config["password"])
            client.select(config["mailbox"])
            status, data = client.search(None, config["search"])
            if status != "OK" or not data or not data[0]:
                return []

            ids = data[0].split()[-config["max_messages"]:]
            raw_messages = []
            for message_id in ids:
                status, parts = client.fetch(message_id, "(RFC822)")
                if status != "OK":
                    continue
                for part in parts:
                    if isinstance(part, tuple) and len(part) > 1:
                        raw_messages.append(part[1])
            return raw_messages
        finally:
            try:
                client.logout()
            except (imaplib.IMAP4.error, OSError):
                pass
