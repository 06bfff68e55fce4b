"""Turn finished runs into item mutations for the history store."""

from __future__ import annotations

import logging as py_logging
import re
from dataclasses import dataclass
from enum import Enum

from clipaction.commands.definition import CommandDefinition
from clipaction.models import MIME_TEXT, is_text_mime
from clipaction.process.models import ProcessState, RunSnapshot

logger = py_logging.getLogger(__name__)


class MutationKind(str, Enum):
    CREATE = "create"
    REPLACE = "replace"
    REMOVE = "remove"
    COPY = "copy"


@dataclass(frozen=True)
class ItemMutation:
    kind: MutationKind
    tab: str
    mime: str = ""
    data: bytes = b""
    item_id: str = ""
    tags: tuple[str, ...] = ()

    @property
    def text(self) -> str:
        return self.data.decode("utf-8", errors="replace")


def split_output(
    text: str,
    separator: str,
    *,
    is_regex: bool = False,
    keep_empty: bool = False,
) -> list[str]:
    if not separator:
        segments = [text]
    elif is_regex:
        pattern = re.compile(separator)
        # Drop the group texts re.split interleaves between segments.
        segments = pattern.split(text)[:: pattern.groups + 1]
    else:
        segments = text.split(separator)
    if keep_empty:
        return segments
    return [segment for segment in segments if segment]


class OutputRouter:
    def route(self, definition: CommandDefinition, result: RunSnapshot) -> list[ItemMutation]:
        if result.state != ProcessState.FINISHED:
            logger.debug(
                "No output routed run=%s command=%s state=%s",
                result.run_id,
                definition.name,
                result.state.value,
            )
            return []

        mime = definition.output_mime.strip()
        if definition.transform:
            return [
                ItemMutation(
                    kind=MutationKind.REPLACE,
                    tab=result.source_tab,
                    mime=mime or MIME_TEXT,
                    data=result.stdout,
                    item_id=result.item_id,
                )
            ]
        if not mime:
            return []

        tab = definition.output_tab or result.source_tab
        tags = tuple(capture for capture in result.captures if capture) if definition.tag_with_captures else ()
        if is_text_mime(mime):
            segments = [
                segment.encode("utf-8")
                for segment in split_output(
                    result.output_text,
                    definition.separator,
                    is_regex=definition.separator_is_regex,
                    keep_empty=definition.keep_empty_segments,
                )
            ]
        elif result.stdout or definition.keep_empty_segments:
            segments = [result.stdout]
        else:
            segments = []

        mutations = [
            ItemMutation(kind=MutationKind.CREATE, tab=tab, mime=mime, data=segment, tags=tags)
            for segment in segments
        ]
        logger.debug(
            "Routed output run=%s command=%s tab=%s items=%s",
            result.run_id,
            definition.name,
            tab,
            len(mutations),
        )
        return mutations
