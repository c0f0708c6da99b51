import logging
from typing import Any, Dict, List, Optional

from lib.config import PipelineConfig
from lib.error_handler import ErrorHandler
from lib.reply_provider import ReplyProvider

logger = logging.getLogger(__name__)

KNOWLEDGE_BASE_HEADER = (
    "\n\n---\n\nKNOWLEDGE BASE:\n"
    "The following is your knowledge base containing verified information. "
    "Use this to provide accurate, consistent responses:\n\n"
)
ARTICLE_SEPARATOR = "\n\n---\n\n"

def format_knowledge_base(articles: List[Dict[str, Any]]) -> str:
    """Digest of published articles appended to the system prompt"""
    if not articles:
        return ""

    rendered = [
        f"## {article.get('title', '')}\nCategory: {article.get('category_name', '')}\n{article.get('content', '')}"
        for article in articles
    ]
    return KNOWLEDGE_BASE_HEADER + ARTICLE_SEPARATOR.join(rendered)

class ChatService:
    def __init__(self, config_store):
        self.config_store = config_store

    async def _knowledge_base(self) -> str:
        try:
            return format_knowledge_base(await self.config_store.published_articles())
        except Exception as e:
            logger.error(f"Error fetching knowledge base: {str(e)}")
            return ""

    def _build_system_prompt(self, base_prompt: str, knowledge_base: str) -> str:
        return f"{base_prompt or ''}{knowledge_base}"

    async def generate(self, config: PipelineConfig, message: str, history: List[Dict[str, str]]) -> str:
        """Reply text for `message`, or "" when no reply should be sent"""
        if not config.replies_enabled:
            logger.info("AI chatbot is not enabled")
            return ""

        return await self.complete(config.reply_provider, config.chatbot.system_prompt, message, history)

    async def complete(self, provider: ReplyProvider, base_prompt: str, message: str,
                       history: Optional[List[Dict[str, str]]] = None) -> str:
        """One provider call with the knowledge base appended to `base_prompt`"""
        history = history or []
        system_prompt = self._build_system_prompt(base_prompt, await self._knowledge_base())
        messages = list(history) + [{"role": "user", "content": message}]

        logger.info(f"Calling {provider.name} with {len(history)} history turns")
        try:
            response = await provider.complete(system_prompt, messages)
        except Exception as e:
            return ErrorHandler.handle_provider_error(provider.name, e)
        return response or ""
