from flask import Flask, request, jsonify, Response
import asyncio
import hmac
import logging
import math
from typing import Optional

from api.services.chat import ChatService
from api.services.config_store import ConfigStore, build_reply_provider
from api.services.storage import StorageService
from api.webhook_handler import WebhookHandler
from lib.config import Settings, get_settings
from lib.database import create_supabase_client
from lib.error_handler import MessagingError
from lib.rate_limiter import InMemoryRateLimiter, RateLimiter
from lib.twilio_client import TwilioClient

logger = logging.getLogger(__name__)

WEBHOOK_PATH = "/whatsapp/webhook"
SEND_PATH = "/whatsapp/send"
AI_TEST_PATH = "/ai/test"

DEFAULT_TEST_MESSAGE = "Hello! Can you briefly introduce yourself?"
PROVIDER_NAMES = {'openai': 'OpenAI', 'anthropic': 'Anthropic'}

def get_client_ip() -> str:
    forwarded = request.headers.get('X-Forwarded-For')
    if forwarded:
        return forwarded.split(',')[0].strip()
    return request.headers.get('X-Real-IP') or 'unknown'

def create_app(settings: Optional[Settings] = None, supabase_client=None,
               rate_limiter: Optional[RateLimiter] = None,
               send_rate_limiter: Optional[RateLimiter] = None,
               ai_test_rate_limiter: Optional[RateLimiter] = None,
               webhook_handler: Optional[WebhookHandler] = None) -> Flask:
    settings = settings or get_settings()
    supabase_client = supabase_client or create_supabase_client(settings)

    config_store = ConfigStore(supabase_client)
    storage_service = StorageService(supabase_client)
    chat_service = ChatService(config_store)
    handler = webhook_handler or WebhookHandler(settings, config_store, storage_service)

    webhook_limiter = rate_limiter or InMemoryRateLimiter(
        settings.rate_limit_max_requests, settings.rate_limit_window_seconds
    )
    send_limiter = send_rate_limiter or InMemoryRateLimiter(30, 60)
    ai_test_limiter = ai_test_rate_limiter or InMemoryRateLimiter(10, 60)
    ai_status_limiter = InMemoryRateLimiter(30, 60)

    app = Flask(__name__)

    def rate_limited(limiter: RateLimiter) -> Optional[Response]:
        result = limiter.check(f"{get_client_ip()}:{request.path}")
        if result.allowed:
            return None

        logger.error(f"SECURITY: Rate limit exceeded for {request.path}")
        retry_after = str(math.ceil(result.reset_in))
        response = jsonify({
            'error': 'Too many requests. Please try again later.',
            'retryAfter': int(retry_after)
        })
        response.status_code = 429
        response.headers['Retry-After'] = retry_after
        response.headers['X-RateLimit-Remaining'] = '0'
        response.headers['X-RateLimit-Reset'] = retry_after
        return response

    def unauthorized() -> Optional[Response]:
        auth_header = request.headers.get('Authorization', '')
        token = auth_header[len('Bearer '):] if auth_header.startswith('Bearer ') else ''
        if not settings.admin_api_token or not token or \
                not hmac.compare_digest(token, settings.admin_api_token):
            response = jsonify({'error': 'Unauthorized. Please provide a valid authentication token.'})
            response.status_code = 401
            return response
        return None

    @app.route("/test", methods=['GET'])
    def test():
        """Test endpoint to verify server is running"""
        return jsonify({
            "status": "ok",
            "message": "Server is running"
        })

    @app.route(WEBHOOK_PATH, methods=['GET'])
    def webhook_health():
        return jsonify({
            "status": "ok",
            "provider": "twilio",
            "message": "Twilio WhatsApp webhook endpoint is active"
        })

    @app.route(WEBHOOK_PATH, methods=['POST'])
    def whatsapp_webhook():
        """Handle incoming WhatsApp webhooks from Twilio"""
        limited = rate_limited(webhook_limiter)
        if limited is not None:
            return limited

        url = settings.webhook_public_url or request.url
        form = request.form.to_dict()
        signature = request.headers.get('X-Twilio-Signature')

        result = asyncio.run(handler.handle(url, form, signature))

        if result.content_type == 'text/xml':
            return Response(result.body, status=result.status, mimetype='text/xml')
        return jsonify(result.body), result.status

    @app.route(SEND_PATH, methods=['POST'])
    def whatsapp_send():
        """Operator-initiated message to a contact"""
        limited = rate_limited(send_limiter)
        if limited is not None:
            return limited

        denied = unauthorized()
        if denied is not None:
            return denied

        body = request.get_json(silent=True) or {}
        to = body.get('to')
        message = body.get('message')

        try:
            config = asyncio.run(config_store.load())
        except Exception as e:
            logger.error(f"Failed to load WhatsApp config: {str(e)}")
            return jsonify({'error': 'Internal server error'}), 500

        whatsapp = config.whatsapp
        if not whatsapp.enabled:
            return jsonify({'error': 'WhatsApp integration is not enabled'}), 400
        if not (whatsapp.account_sid and whatsapp.auth_token and whatsapp.twilio_whatsapp_number):
            return jsonify({'error': 'Twilio credentials not configured'}), 400
        if not to:
            return jsonify({'error': 'Recipient phone number is required'}), 400
        if not message:
            return jsonify({'error': 'Message content is required'}), 400

        recipient = to if to.startswith('whatsapp:') else f"+{to.lstrip('+')}"
        try:
            sid, status = TwilioClient(whatsapp).send_message(recipient, message, body.get('mediaUrl'))
        except MessagingError as e:
            return jsonify({
                'error': e.message,
                'errorCode': e.code,
                'moreInfo': e.more_info
            }), 400
        except Exception as e:
            logger.error(f"Error sending Twilio WhatsApp message: {str(e)}", exc_info=True)
            return jsonify({'error': 'Internal server error'}), 500

        return jsonify({
            'success': True,
            'messageSid': sid,
            'status': status,
            'recipient': to
        })

    @app.route(AI_TEST_PATH, methods=['GET'])
    def ai_status():
        """Chatbot configuration summary, without keys"""
        limited = rate_limited(ai_status_limiter)
        if limited is not None:
            return limited
        denied = unauthorized()
        if denied is not None:
            return denied

        try:
            config = asyncio.run(config_store.load())
        except Exception as e:
            logger.error(f"Failed to load chatbot config: {str(e)}")
            return jsonify({'error': 'Internal server error'}), 500

        if config.chatbot is None:
            return jsonify({'status': 'not_configured', 'message': 'AI chatbot not configured yet'})

        return jsonify({
            'status': 'enabled' if config.chatbot.enabled else 'disabled',
            'provider': config.chatbot.provider,
            'model': config.chatbot.model,
            'configured': True
        })

    @app.route(AI_TEST_PATH, methods=['POST'])
    def ai_test():
        """Run the configured provider and knowledge base against a test prompt"""
        limited = rate_limited(ai_test_limiter)
        if limited is not None:
            return limited
        denied = unauthorized()
        if denied is not None:
            return denied

        try:
            config = asyncio.run(config_store.load())
        except Exception as e:
            logger.error(f"Failed to load chatbot config: {str(e)}")
            return jsonify({'error': 'Internal server error'}), 500

        chatbot = config.chatbot
        if chatbot is None:
            return jsonify({
                'error': 'AI chatbot not configured. Please configure it in the dashboard first.'
            }), 400
        if chatbot.provider not in PROVIDER_NAMES:
            return jsonify({'error': f"Unknown provider: {chatbot.provider}"}), 400

        # The test runs whether or not replies are switched on
        provider = build_reply_provider(chatbot.model_copy(update={'enabled': True}))
        if provider is None:
            return jsonify({'error': f"{PROVIDER_NAMES[chatbot.provider]} API key not configured"}), 400

        body = request.get_json(silent=True) or {}
        test_message = body.get('message') or DEFAULT_TEST_MESSAGE

        reply = asyncio.run(chat_service.complete(provider, chatbot.system_prompt, test_message))
        if not reply:
            return jsonify({
                'error': f"{PROVIDER_NAMES[chatbot.provider]} API request failed",
                'provider': chatbot.provider,
                'status': 'disconnected'
            }), 502

        return jsonify({
            'success': True,
            'provider': chatbot.provider,
            'model': provider.model,
            'status': 'connected',
            'testMessage': test_message,
            'response': reply
        })

    return app

if __name__ == "__main__":
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    logger.info("Starting Flask server...")
    create_app(settings).run(debug=True, port=8000)
