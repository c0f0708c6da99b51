import logging
from typing import Dict, NamedTuple, Optional

from api.services.chat import ChatService
from api.services.config_store import ConfigStore
from api.services.context import build_context_window
from api.services.identity import IdentityMapper
from api.services.storage import StorageService
from api.services.whatsapp import WhatsAppSender
from lib.config import PipelineConfig, Settings
from lib.error_handler import ErrorHandler
from lib.twilio_client import strip_whatsapp_prefix, validate_signature

logger = logging.getLogger(__name__)

EMPTY_TWIML = '<?xml version="1.0" encoding="UTF-8"?><Response></Response>'

class WebhookResponse(NamedTuple):
    status: int
    body: object  # TwiML string, or a dict rendered as JSON
    content_type: str = 'text/xml'

ACKNOWLEDGEMENT = WebhookResponse(200, EMPTY_TWIML)

def validate_message(content: Optional[str], max_length: int = 10000) -> bool:
    if not content:
        return False
    trimmed = content.strip()
    return 0 < len(trimmed) <= max_length

def sanitize_message(content: str) -> str:
    return content.replace('<', '&lt;').replace('>', '&gt;').strip()

class WebhookHandler:
    """Inbound WhatsApp delivery -> stored message -> AI reply via Twilio"""

    def __init__(self, settings: Settings, config_store: ConfigStore, storage_service: StorageService,
                 chat_service: Optional[ChatService] = None, sender_factory=None):
        self.settings = settings
        self.config_store = config_store
        self.storage = storage_service
        self.identity = IdentityMapper(storage_service)
        self.chat = chat_service or ChatService(config_store)
        self.sender_factory = sender_factory or self._default_sender

    def _default_sender(self, config: PipelineConfig) -> WhatsAppSender:
        return WhatsAppSender(
            config.whatsapp,
            max_length=self.settings.chunk_max_length,
            delay_seconds=self.settings.chunk_delay_seconds
        )

    async def handle(self, url: str, form: Dict[str, str], signature: Optional[str]) -> WebhookResponse:
        logger.info("Twilio WhatsApp webhook received message")

        try:
            config = await self.config_store.load()
        except Exception as e:
            logger.error(f"SECURITY: Could not load config to verify signature: {str(e)}")
            return WebhookResponse(401, {'error': 'Invalid signature'}, 'application/json')

        if not validate_signature(config.whatsapp.auth_token, url, form, signature):
            return WebhookResponse(401, {'error': 'Invalid signature'}, 'application/json')

        if not config.whatsapp.enabled:
            logger.warning("WhatsApp integration is disabled - rejecting delivery")
            return WebhookResponse(403, {'error': 'WhatsApp integration is disabled'}, 'application/json')

        phone_number = strip_whatsapp_prefix(form.get('From', ''))
        message = form.get('Body', '')

        if not phone_number or not message:
            logger.info("Missing phone number or message content - skipping")
            return ACKNOWLEDGEMENT

        if not validate_message(message, self.settings.max_message_length):
            logger.info(f"Message failed content policy ({len(message)} chars) - skipping")
            return ACKNOWLEDGEMENT

        await self.process_message(config, phone_number, form)
        return ACKNOWLEDGEMENT

    async def process_message(self, config: PipelineConfig, phone_number: str,
                              form: Dict[str, str]) -> Optional[str]:
        """Run one accepted delivery through the pipeline.

        Never raises: Twilio retries any non-200, which would duplicate the
        message, so failures are logged against the chat they belong to.
        """
        text = sanitize_message(form.get('Body', ''))
        message_sid = form.get('MessageSid', '')
        media_url = form.get('MediaUrl0') or None
        try:
            num_media = int(form.get('NumMedia') or 0)
        except ValueError:
            num_media = 0

        chat_id = None
        try:
            identity = await self.identity.resolve(phone_number, text)
            chat_id = identity.conversation_id

            inbound_id = await self.storage.append_inbound(chat_id, text, message_sid, media_url, num_media)
            logger.info(f"Message stored successfully for chat {chat_id} (new: {identity.is_new_conversation})")

            history = await build_context_window(
                self.storage, chat_id, message_sid, inbound_id, limit=self.settings.history_limit
            )

            reply = await self.chat.generate(config, text, history)
            if not reply:
                logger.info("No AI response generated (AI might be disabled)")
                return chat_id

            logger.info(f"AI response generated: {reply[:100]}...")
            result = await self.sender_factory(config).send(phone_number, reply)

            if not result.delivered:
                logger.error(f"Failed to send AI response for chat {chat_id}: {result.error}")
                return chat_id

            await self.storage.append_outbound(chat_id, reply, result.last_provider_id, result.last_status)
            logger.info(f"AI response stored and sent successfully for chat {chat_id}")
        except Exception as e:
            ErrorHandler.handle_pipeline_error(e, chat_id)
        return chat_id
