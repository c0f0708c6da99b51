import logging
from typing import Any, Dict, List, Optional

from lib.anthropic_client import AnthropicReplyProvider, DEFAULT_ANTHROPIC_MODEL
from lib.config import ChatbotConfig, PipelineConfig, WhatsAppConfig
from lib.database import INTEGRATIONS_TABLE, KNOWLEDGE_TABLE
from lib.error_handler import ConfigurationError
from lib.openai_client import OpenAIReplyProvider, DEFAULT_OPENAI_MODEL
from lib.reply_provider import ReplyProvider, DEFAULT_TEMPERATURE, DEFAULT_MAX_TOKENS

logger = logging.getLogger(__name__)

def build_reply_provider(chatbot: Optional[ChatbotConfig]) -> Optional[ReplyProvider]:
    """Pick the language model backend once, when configuration is loaded.

    Returns None when replies are disabled or the selected provider has no
    API key; the pipeline then stores the message without answering.
    """
    if not chatbot or not chatbot.enabled:
        return None

    temperature = chatbot.temperature if chatbot.temperature is not None else DEFAULT_TEMPERATURE
    max_tokens = chatbot.max_tokens or DEFAULT_MAX_TOKENS

    if chatbot.provider == 'openai' and chatbot.openai_api_key:
        return OpenAIReplyProvider(
            api_key=chatbot.openai_api_key,
            model=chatbot.model or DEFAULT_OPENAI_MODEL,
            temperature=temperature,
            max_tokens=max_tokens
        )
    if chatbot.provider == 'anthropic' and chatbot.anthropic_api_key:
        return AnthropicReplyProvider(
            api_key=chatbot.anthropic_api_key,
            model=chatbot.model or DEFAULT_ANTHROPIC_MODEL,
            temperature=temperature,
            max_tokens=max_tokens
        )

    logger.warning(f"Chatbot enabled but provider '{chatbot.provider}' is not usable")
    return None

class ConfigStore:
    """Read-only view of the settings and knowledge base the dashboard maintains"""

    def __init__(self, supabase_client):
        self.supabase = supabase_client

    def _integration(self, name: str) -> Optional[Dict[str, Any]]:
        result = self.supabase.table(INTEGRATIONS_TABLE).select('*').eq('id', name).limit(1).execute()
        if not result.data:
            return None
        return result.data[0].get('config') or {}

    async def load(self) -> PipelineConfig:
        try:
            whatsapp_doc = self._integration('whatsapp')
            chatbot_doc = self._integration('chatbot')

            whatsapp = WhatsAppConfig(**whatsapp_doc) if whatsapp_doc is not None else WhatsAppConfig()
            chatbot = ChatbotConfig(**chatbot_doc) if chatbot_doc is not None else None
        except Exception as e:
            logger.error(f"Failed to load integration config: {str(e)}")
            raise ConfigurationError(f"Failed to load integration config: {str(e)}")

        return PipelineConfig(
            whatsapp=whatsapp,
            chatbot=chatbot,
            reply_provider=build_reply_provider(chatbot)
        )

    async def published_articles(self) -> List[Dict[str, Any]]:
        result = self.supabase.table(KNOWLEDGE_TABLE).select('*').eq('status', 'published').execute()
        return result.data or []
