"""Best-effort delivery of notification effects produced by the services."""
from __future__ import annotations

import asyncio
import logging
from typing import Iterable, Optional

from trustcore.config import get_settings
from trustcore.ports import NotificationSink
from trustcore.schemas.notification import NotificationEffect

logger = logging.getLogger(__name__)


class LoggingNotificationSink:
    """Sink that only writes notifications to the application log."""

    async def send(self, effect: NotificationEffect) -> None:
        logger.info(
            "NOTIFY org=%s recipient=%s category=%s title=%s",
            effect.organization_id, effect.recipient_id, effect.category, effect.title,
        )


async def run_effects(
    sink: NotificationSink,
    effects: Iterable[NotificationEffect],
    timeout: Optional[float] = None,
) -> int:
    """
    Send each effect with its own deadline. Failures and timeouts are logged
    and skipped; this never raises. Returns the number delivered.
    """
    timeout = timeout if timeout is not None else get_settings().notification_timeout_seconds
    delivered = 0
    for effect in effects:
        try:
            await asyncio.wait_for(sink.send(effect), timeout=timeout)
            delivered += 1
        except asyncio.TimeoutError:
            logger.warning("Notification to %s timed out after %.2fs", effect.recipient_id, timeout)
        except Exception:
            logger.exception("Failed to send notification to %s", effect.recipient_id)
    return delivered
