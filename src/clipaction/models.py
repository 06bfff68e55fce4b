"""Clipboard item contract consumed by the command engine."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

MIME_TEXT = "text/plain"


@runtime_checkable
class Item(Protocol):
    """Read-only view of one clipboard history entry."""

    item_id: str
    tab: str

    def representation(self, mime: str) -> bytes | None: ...

    def formats(self) -> tuple[str, ...]: ...

    def primary_text(self) -> str | None: ...

    def source_window_title(self) -> str | None: ...


def _new_item_id() -> str:
    return uuid.uuid4().hex


@dataclass
class ClipboardItem:
    data: dict[str, bytes] = field(default_factory=dict)
    item_id: str = field(default_factory=_new_item_id)
    tab: str = ""
    window_title: str | None = None

    @classmethod
    def from_text(
        cls,
        text: str,
        *,
        tab: str = "",
        window_title: str | None = None,
        item_id: str | None = None,
    ) -> ClipboardItem:
        return cls(
            data={MIME_TEXT: text.encode("utf-8")},
            item_id=item_id or _new_item_id(),
            tab=tab,
            window_title=window_title,
        )

    def representation(self, mime: str) -> bytes | None:
        return self.data.get(mime)

    def formats(self) -> tuple[str, ...]:
        return tuple(self.data)

    def primary_text(self) -> str | None:
        raw = self.data.get(MIME_TEXT)
        if raw is None:
            return None
        return raw.decode("utf-8", errors="replace")

    def source_window_title(self) -> str | None:
        return self.window_title


def is_text_mime(mime: str) -> bool:
    return mime.strip().lower().startswith("text/")
