from __future__ import annotations

import logging


logger = logging.getLogger(__name__)


class NoopPushSender:
    # Log-only sender keeps local development free of push credentials.
    async def send(self, *, push_token: str, title: str, body: str) -> None:
        logger.info("push_noop token_prefix=%s title=%s body=%s", push_token[:8], title, body)
