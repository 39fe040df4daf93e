"""
Outbound SMS. Logs instead of calling a provider.
"""

import logging

from shiftdrop.phone import redact

logger = logging.getLogger(__name__)


async def send_sms(phone: str, message: str) -> None:
    logger.info("[sms to %s] %s", redact(phone), message)
