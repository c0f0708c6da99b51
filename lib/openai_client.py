import asyncio
import logging
from openai import OpenAI
from typing import Dict, List

from lib.error_handler import ErrorHandler
from lib.reply_provider import ReplyProvider, DEFAULT_TEMPERATURE, DEFAULT_MAX_TOKENS

logger = logging.getLogger(__name__)

DEFAULT_OPENAI_MODEL = "gpt-4-turbo-preview"

class OpenAIReplyProvider(ReplyProvider):
    """OpenAI chat completions, system prompt sent as the first message"""

    name = "OpenAI"

    def __init__(self, api_key: str, model: str = DEFAULT_OPENAI_MODEL,
                 temperature: float = DEFAULT_TEMPERATURE, max_tokens: int = DEFAULT_MAX_TOKENS):
        super().__init__(api_key, model, temperature, max_tokens)
        self.client = OpenAI(api_key=api_key)

    def build_messages(self, system_prompt: str, messages: List[Dict[str, str]]) -> List[Dict[str, str]]:
        return [{"role": "system", "content": system_prompt}] + [
            {"role": m["role"], "content": m["content"]} for m in messages
        ]

    async def complete(self, system_prompt: str, messages: List[Dict[str, str]]) -> str:
        try:
            payload = self.build_messages(system_prompt, messages)
            # Run the blocking SDK call in an executor
            loop = asyncio.get_running_loop()
            response = await loop.run_in_executor(
                None,
                lambda: self.client.chat.completions.create(
                    model=self.model,
                    messages=payload,
                    temperature=self.temperature,
                    max_tokens=self.max_tokens
                )
            )

            if not response.choices or not response.choices[0].message.content:
                logger.warning("OpenAI returned no content")
                return ""

            return response.choices[0].message.content

        except Exception as e:
            return ErrorHandler.handle_provider_error(self.name, e)
