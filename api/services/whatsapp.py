import asyncio
import logging
from typing import Callable, List, NamedTuple, Optional

from lib.config import WhatsAppConfig
from lib.error_handler import ErrorHandler
from lib.twilio_client import TwilioClient

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_LENGTH = 1500  # WhatsApp caps bodies at 1600 characters

def _last_index(text: str, token: str, position: int) -> int:
    """Index of the last `token` starting at or before `position`, or -1"""
    return text.rfind(token, 0, position + len(token))

def split_message(message: str, max_length: int = DEFAULT_CHUNK_LENGTH) -> List[str]:
    """Greedy left-to-right split for transport limits.

    Each chunk breaks at the last paragraph break, else sentence end, else
    space, found past the midpoint of `max_length`; failing all three it is
    cut at exactly `max_length`.
    """
    if len(message) <= max_length:
        return [message]

    chunks = []
    remaining = message
    midpoint = max_length * 0.5

    while remaining:
        if len(remaining) <= max_length:
            chunks.append(remaining)
            break

        break_point = max_length

        paragraph_break = _last_index(remaining, '\n\n', max_length)
        if paragraph_break > midpoint:
            break_point = paragraph_break + 2
        else:
            sentence_break = max(
                _last_index(remaining, '. ', max_length),
                _last_index(remaining, '! ', max_length),
                _last_index(remaining, '? ', max_length)
            )
            if sentence_break > midpoint:
                break_point = sentence_break + 2
            else:
                word_break = _last_index(remaining, ' ', max_length)
                if word_break > midpoint:
                    break_point = word_break + 1

        chunks.append(remaining[:break_point].strip())
        remaining = remaining[break_point:].strip()

    return chunks

def add_part_indicators(chunks: List[str]) -> List[str]:
    if len(chunks) == 1:
        return chunks
    total = len(chunks)
    return [f"{chunk}\n\n({i}/{total})" for i, chunk in enumerate(chunks, start=1)]

class SendResult(NamedTuple):
    delivered: bool
    last_provider_id: Optional[str] = None
    last_status: Optional[str] = None
    error: Optional[str] = None

class WhatsAppSender:
    def __init__(self, config: WhatsAppConfig, max_length: int = DEFAULT_CHUNK_LENGTH,
                 delay_seconds: float = 0.5,
                 client_factory: Callable[[WhatsAppConfig], TwilioClient] = TwilioClient):
        self.config = config
        self.max_length = max_length
        self.delay_seconds = delay_seconds
        self.client_factory = client_factory

    async def send(self, to_number: str, message: str) -> SendResult:
        """Send `message` in order, one chunk at a time.

        Stops at the first failed chunk; earlier chunks stay delivered.
        """
        last_sid = None
        last_status = None
        try:
            client = self.client_factory(self.config)
            bodies = add_part_indicators(split_message(message, self.max_length))
            loop = asyncio.get_running_loop()

            for i, body in enumerate(bodies, start=1):
                last_sid, last_status = await loop.run_in_executor(
                    None, lambda body=body: client.send_message(to_number, body)
                )
                logger.info(f"Message part {i}/{len(bodies)} sent. SID: {last_sid}")

                # Twilio does not guarantee ordering; spacing the sends helps
                if i < len(bodies):
                    await asyncio.sleep(self.delay_seconds)

            return SendResult(True, last_sid, last_status)

        except Exception as e:
            return SendResult(False, last_sid, last_status, ErrorHandler.handle_send_error(e))
