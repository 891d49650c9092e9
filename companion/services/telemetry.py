"""Structured chat event logging on top of the standard `logging` module."""

from __future__ import annotations

import logging
import re
import time
import uuid
from typing import Any, Dict, MutableMapping, Optional, Tuple

MAX_PREVIEW_LENGTH = 160

_logger = logging.getLogger("companion.chat")


def preview_text(value: Optional[str], max_length: int = MAX_PREVIEW_LENGTH) -> str:
    text = re.sub(r"\s+", " ", value or "").strip()
    if len(text) <= max_length:
        return text
    return f"{text[:max_length]}..."


def new_request_id() -> str:
    return f"{int(time.time() * 1000):x}_{uuid.uuid4().hex[:6]}"


def error_payload(error: BaseException) -> Dict[str, Any]:
    return {
        "name": type(error).__name__,
        "message": str(error) or "unknown_error",
        "statusCode": getattr(error, "status_code", 500),
        "code": getattr(error, "code", None),
    }


class ChatEventLogger(logging.LoggerAdapter):
    """Prefixes every record with request, owner, mode and scope.

    `event` records are emitted at INFO when debug chat logs are enabled and
    at DEBUG otherwise; `warn_event` and `error_event` always log at WARNING and ERROR.
    """

    def __init__(
        self,
        request_id: str = "",
        owner_id: str = "",
        mode: str = "",
        scope: str = "",
        verbose: bool = False,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        super().__init__(logger or _logger, {"request_id": request_id, "owner_id": owner_id, "mode": mode})
        self.scope = scope
        self.verbose = verbose
        self.events: list[Tuple[str, Dict[str, Any]]] = []

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> Tuple[Any, MutableMapping[str, Any]]:
        parts = ["[chat]"]
        if self.extra.get("request_id"):
            parts.append(f"request={self.extra['request_id']}")
        if self.extra.get("owner_id"):
            parts.append(f"owner={self.extra['owner_id']}")
        if self.extra.get("mode"):
            parts.append(f"mode={self.extra['mode']}")
        if self.scope:
            parts.append(f"scope={self.scope}")
        return f"{' '.join(parts)} {msg}", kwargs

    def bind(self, **changes: str) -> "ChatEventLogger":
        scope = changes.pop("scope", self.scope)
        extra = dict(self.extra)
        extra.update(changes)
        child = ChatEventLogger(
            request_id=extra.get("request_id", ""),
            owner_id=extra.get("owner_id", ""),
            mode=extra.get("mode", ""),
            scope=scope,
            verbose=self.verbose,
            logger=self.logger,
        )
        child.events = self.events
        return child

    def _emit(self, level: int, stage: str, payload: Dict[str, Any]) -> None:
        self.events.append((stage, payload))
        self.log(level, "%s %s", stage, payload)

    def event(self, stage: str, **payload: Any) -> None:
        self._emit(logging.INFO if self.verbose else logging.DEBUG, stage, payload)

    def warn_event(self, stage: str, **payload: Any) -> None:
        self._emit(logging.WARNING, stage, payload)

    def error_event(self, stage: str, **payload: Any) -> None:
        self._emit(logging.ERROR, stage, payload)
