"""Interface to the messaging network used for account pairing.

The protocol library itself lives outside this package. A concrete adapter is
provided by the deployment and named with ``LINK_ADAPTER=module:factory``;
tests substitute fakes implementing the same two protocols.
"""

from __future__ import annotations

import importlib
import json
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, List, Optional, Protocol

from agentdeploy.logging import get_logger
from agentdeploy.storage.common import MAX_CHATS, MAX_CONTACTS, MAX_MESSAGES
from agentdeploy.storage.models import ProfileData

logger = get_logger(__name__)

CREDS_FILENAME = "creds.json"

_JID_PATTERN = re.compile(r"^(\d+)(?::\d+)?@(s\.whatsapp\.net|hosted)$")

HistoryCallback = Callable[[List[Any], List[Any], List[Any]], None]
ItemsCallback = Callable[[List[Any]], None]
PairingCodeCallback = Callable[[str], None]


class LinkDisconnected(Exception):
    """The connection closed before reaching the open state."""

    def __init__(
        self,
        status_code: Optional[int],
        message: str = "connection closed",
        *,
        code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message


class LinkConnection(Protocol):
    @property
    def display_name(self) -> Optional[str]: ...

    def on_history(self, callback: HistoryCallback) -> None: ...

    def on_chats(self, callback: ItemsCallback) -> None: ...

    def on_contacts(self, callback: ItemsCallback) -> None: ...

    async def close(self) -> None: ...


class MessagingLinkAdapter(Protocol):
    async def open(self, work_dir: str, on_pairing_code: PairingCodeCallback) -> LinkConnection: ...

    async def wait_for_open(self, connection: LinkConnection) -> None: ...

    def read_persisted_identity(self, work_dir: str) -> Optional[str]: ...


def jid_to_e164(jid: str) -> Optional[str]:
    match = _JID_PATTERN.match(jid or "")
    if not match:
        return None
    return f"+{match.group(1)}"


def read_identity_from_creds(work_dir: str) -> Optional[str]:
    """Return the E.164 identity stored in ``creds.json`` under ``work_dir``.

    Missing or unreadable credentials yield ``None``; adapters writing the
    multi-file auth layout can delegate ``read_persisted_identity`` here.
    """
    creds_path = Path(work_dir) / CREDS_FILENAME
    try:
        parsed = json.loads(creds_path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return None
    me = parsed.get("me") if isinstance(parsed, dict) else None
    jid = me.get("id") if isinstance(me, dict) else None
    return jid_to_e164(jid) if isinstance(jid, str) else None


def disconnect_status(exc: BaseException) -> Optional[int]:
    status = getattr(exc, "status_code", None)
    return status if isinstance(status, int) else None


def format_link_error(exc: BaseException) -> str:
    if isinstance(exc, LinkDisconnected):
        parts = [
            f"status={exc.status_code}" if exc.status_code is not None else None,
            f"code={exc.code}" if exc.code else None,
            exc.message or None,
        ]
        rendered = " ".join(part for part in parts if part)
        if rendered:
            return rendered
    text = str(exc)
    return text or type(exc).__name__


@dataclass
class SyncCapture:
    """Bounded accumulator for sync data pushed while a link is open.

    A history push replaces everything collected so far; incremental chat and
    contact pushes append until the caps are reached.
    """

    display_name: Optional[str] = None
    contacts: List[Any] = field(default_factory=list)
    chats: List[Any] = field(default_factory=list)
    messages: List[Any] = field(default_factory=list)

    @property
    def has_data(self) -> bool:
        return bool(self.contacts or self.chats)

    def on_history(self, contacts: List[Any], chats: List[Any], messages: List[Any]) -> None:
        self.contacts = list(contacts or [])[:MAX_CONTACTS]
        self.chats = list(chats or [])[:MAX_CHATS]
        self.messages = list(messages or [])[:MAX_MESSAGES]

    def on_chats(self, chats: List[Any]) -> None:
        if chats:
            self.chats = (self.chats + list(chats))[:MAX_CHATS]

    def on_contacts(self, contacts: List[Any]) -> None:
        if contacts:
            self.contacts = (self.contacts + list(contacts))[:MAX_CONTACTS]

    def to_profile(self, user_id: str) -> ProfileData:
        return ProfileData(
            user_id=user_id,
            display_name=self.display_name,
            contacts=list(self.contacts),
            chats=list(self.chats),
            messages=list(self.messages),
        )


def load_link_adapter(import_path: str, **kwargs: Any) -> MessagingLinkAdapter:
    """Instantiate the adapter named by ``module:factory``."""
    module_name, sep, attr = import_path.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"link adapter must look like 'module:factory', got {import_path!r}")
    module = importlib.import_module(module_name)
    factory = getattr(module, attr)
    adapter = factory(**kwargs)
    logger.info("link_adapter_loaded", adapter=import_path)
    return adapter
