from __future__ import annotations

from typing import Protocol


class PushSender(Protocol):
    async def send(self, *, push_token: str, title: str, body: str) -> None:
        ...
