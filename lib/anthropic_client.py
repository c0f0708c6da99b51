import asyncio
import logging
from anthropic import Anthropic
from typing import Dict, List

from lib.error_handler import ErrorHandler
from lib.reply_provider import ReplyProvider, DEFAULT_TEMPERATURE, DEFAULT_MAX_TOKENS

logger = logging.getLogger(__name__)

DEFAULT_ANTHROPIC_MODEL = "claude-3-opus-20240229"

class AnthropicReplyProvider(ReplyProvider):
    """Anthropic messages API, system prompt passed as its own field"""

    name = "Anthropic"

    def __init__(self, api_key: str, model: str = DEFAULT_ANTHROPIC_MODEL,
                 temperature: float = DEFAULT_TEMPERATURE, max_tokens: int = DEFAULT_MAX_TOKENS):
        super().__init__(api_key, model, temperature, max_tokens)
        self.client = Anthropic(api_key=api_key)

    async def complete(self, system_prompt: str, messages: List[Dict[str, str]]) -> str:
        try:
            payload = [{"role": m["role"], "content": m["content"]} for m in messages]
            loop = asyncio.get_running_loop()
            response = await loop.run_in_executor(
                None,
                lambda: self.client.messages.create(
                    model=self.model,
                    max_tokens=self.max_tokens,
                    temperature=self.temperature,
                    system=system_prompt,
                    messages=payload
                )
            )

            if not response.content:
                logger.warning("Anthropic returned no content")
                return ""

            return getattr(response.content[0], "text", "") or ""

        except Exception as e:
            return ErrorHandler.handle_provider_error(self.name, e)
