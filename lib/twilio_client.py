from twilio.rest import Client
from twilio.base.exceptions import TwilioRestException
from twilio.request_validator import RequestValidator
from typing import Dict, Optional, Tuple
import logging
from lib.config import WhatsAppConfig
from lib.error_handler import MessagingError

logger = logging.getLogger(__name__)

WHATSAPP_PREFIX = 'whatsapp:'

def format_whatsapp_address(number: str) -> str:
    """Twilio routes WhatsApp traffic to `whatsapp:<E.164 number>`"""
    return number if number.startswith(WHATSAPP_PREFIX) else f"{WHATSAPP_PREFIX}{number}"

def strip_whatsapp_prefix(address: str) -> str:
    return address.replace(WHATSAPP_PREFIX, '')

def validate_signature(auth_token: str, url: str, params: Dict[str, str], signature: Optional[str]) -> bool:
    """Check a webhook against Twilio's X-Twilio-Signature. Fails closed."""
    if not auth_token:
        logger.error("SECURITY: No Twilio auth token configured - rejecting request")
        return False

    if not signature:
        logger.error("SECURITY: No Twilio signature in request")
        return False

    try:
        is_valid = RequestValidator(auth_token).validate(url, params, signature)
    except Exception as e:
        logger.error(f"Error validating Twilio signature: {str(e)}")
        return False

    if not is_valid:
        logger.error("SECURITY: Invalid Twilio signature - possible spoofed request")
    return is_valid

class TwilioClient:
    def __init__(self, config: WhatsAppConfig):
        if not (config.account_sid and config.auth_token and config.twilio_whatsapp_number):
            raise MessagingError("Twilio not configured")
        self.client = Client(config.account_sid, config.auth_token)
        self.phone_number = format_whatsapp_address(config.twilio_whatsapp_number)

    def send_message(self, to_number: str, body: str, media_url: Optional[str] = None) -> Tuple[str, str]:
        """Send a WhatsApp message and return (message SID, delivery status)."""
        options = {
            'body': body,
            'from_': self.phone_number,
            'to': format_whatsapp_address(to_number)
        }
        if media_url:
            options['media_url'] = [media_url]

        try:
            message = self.client.messages.create(**options)
            logger.info(f"Message sent successfully. SID: {message.sid}, status: {message.status}")
            return message.sid, message.status
        except TwilioRestException as e:
            logger.error(f"Twilio error sending message: {str(e)}")
            more_info = f"https://www.twilio.com/docs/errors/{e.code}" if e.code else None
            if e.code == 63016:  # Outside the 24 hour WhatsApp session window
                raise MessagingError("Recipient is outside the WhatsApp session window.", e.code, more_info)
            elif e.code == 21211:  # Invalid phone number
                raise MessagingError("Invalid phone number format.", e.code, more_info)
            raise MessagingError(f"Failed to send message: {e.msg}", e.code, more_info)
