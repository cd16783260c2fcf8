import asyncio
import logging

import telnyx

from app.types.reminder import MessageRef
from config import settings

_LOGGER = logging.getLogger(__name__)

FROM_NUM = settings.TELNYX_FROM_NUMBER
TELNYX_API_KEY = settings.TELNYX_API_KEY
if TELNYX_API_KEY:
    telnyx.api_key = TELNYX_API_KEY

def send_sms(to: str, body: str) -> None:
    if not TELNYX_API_KEY or not FROM_NUM:
        _LOGGER.info("[SMS] DEV mode: would send to %s: %s", to, body)
        return
    telnyx.Message.create(from_=FROM_NUM, to=to, text=body)


class SmsMessenger:
    """Replies to an inbound SMS by texting its sender.

    SMS has no threading or timestamps, so ``created_at`` is only logged.
    """

    async def send_reply(self, message: MessageRef, text: str, created_at: int) -> None:
        _LOGGER.debug("Replying to %s (ts=%d)", message.id, created_at)
        await asyncio.to_thread(send_sms, message.sender, text)
