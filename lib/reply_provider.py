from abc import ABC, abstractmethod
from typing import Dict, List

DEFAULT_TEMPERATURE = 0.7
DEFAULT_MAX_TOKENS = 500

class ReplyProvider(ABC):
    """A language model backend: prompt in, text out.

    Implementations never raise. Any failure (API error, network error,
    malformed response) is logged and reported as an empty string.
    """

    name = "provider"

    def __init__(self, api_key: str, model: str, temperature: float = DEFAULT_TEMPERATURE,
                 max_tokens: int = DEFAULT_MAX_TOKENS):
        self.api_key = api_key
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens

    @abstractmethod
    async def complete(self, system_prompt: str, messages: List[Dict[str, str]]) -> str:
        """Generate a reply.

        `messages` is the chronological user/assistant history ending with
        the current user turn.
        """
