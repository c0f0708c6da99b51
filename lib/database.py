import logging
from supabase import create_client, Client

from lib.config import Settings
from lib.error_handler import ConfigurationError

logger = logging.getLogger(__name__)

CHATS_TABLE = 'chats'
MESSAGES_TABLE = 'messages'
INTEGRATIONS_TABLE = 'integrations'
KNOWLEDGE_TABLE = 'knowledge_articles'

# Postgres function, see supabase/migrations/001_increment_unread_count.sql
INCREMENT_UNREAD_FUNCTION = 'increment_unread_count'

def create_supabase_client(settings: Settings) -> Client:
    if not settings.supabase_url or not settings.supabase_key:
        raise ConfigurationError("SUPABASE_URL and SUPABASE_KEY must be set")

    logger.info("Initializing Supabase client...")
    client = create_client(settings.supabase_url, settings.supabase_key)
    logger.info("Supabase client initialized successfully")
    return client
