from typing import Optional
import logging

logger = logging.getLogger(__name__)

class AppError(Exception):
    def __init__(self, message: str, status_code: int = 500, user_message: Optional[str] = None):
        self.message = message
        self.status_code = status_code
        self.user_message = user_message or "An error occurred. Please try again later."
        super().__init__(self.message)

class ConfigurationError(AppError):
    """Integration settings could not be read or are unusable"""

class StorageError(AppError):
    """A Supabase read or write failed"""

class MessagingError(AppError):
    """Twilio rejected or failed an outbound message"""
    def __init__(self, message: str, code: Optional[int] = None, more_info: Optional[str] = None):
        self.code = code
        self.more_info = more_info
        super().__init__(message, status_code=400)

class ErrorHandler:
    @staticmethod
    def handle_pipeline_error(error: Exception, chat_id: Optional[str] = None) -> None:
        logger.error(f"Pipeline error (chat: {chat_id or 'unresolved'}): {str(error)}", exc_info=True)

    @staticmethod
    def handle_provider_error(provider: str, error: Exception) -> str:
        logger.error(f"{provider} API error: {str(error)}")
        return ""

    @staticmethod
    def handle_send_error(error: Exception) -> str:
        logger.error(f"Error sending WhatsApp message: {str(error)}")
        return str(error)
