from typing import Optional
from functools import lru_cache
from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict
from pydantic_settings import BaseSettings

from lib.reply_provider import ReplyProvider

load_dotenv()

class Settings(BaseSettings):
    # Supabase settings
    supabase_url: str = ''
    supabase_key: str = ''

    # Public URL Twilio signs against, when running behind a proxy
    webhook_public_url: Optional[str] = None

    # Bearer token for the operator send endpoint
    admin_api_token: str = ''

    # Rate limiting
    rate_limit_max_requests: int = 100
    rate_limit_window_seconds: int = 60

    # Pipeline tuning
    history_limit: int = 5
    max_message_length: int = 10000
    chunk_max_length: int = 1500
    chunk_delay_seconds: float = 0.5

    log_level: str = 'INFO'

@lru_cache()
def get_settings() -> Settings:
    return Settings()


class WhatsAppConfig(BaseModel):
    """Twilio WhatsApp integration, stored in the `integrations` table"""
    enabled: bool = False
    account_sid: str = ''
    auth_token: str = ''
    twilio_whatsapp_number: str = ''


class ChatbotConfig(BaseModel):
    """Language model settings, stored in the `integrations` table"""
    enabled: bool = False
    provider: str = 'openai'
    model: Optional[str] = None
    system_prompt: str = ''
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    openai_api_key: str = ''
    anthropic_api_key: str = ''


class PipelineConfig(BaseModel):
    """Everything one webhook delivery needs, loaded once and passed along"""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    whatsapp: WhatsAppConfig = WhatsAppConfig()
    chatbot: Optional[ChatbotConfig] = None
    reply_provider: Optional[ReplyProvider] = None

    @property
    def replies_enabled(self) -> bool:
        return bool(self.chatbot and self.chatbot.enabled and self.reply_provider)
