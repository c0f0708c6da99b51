from typing import Any, Dict, List, Optional

from api.services.storage import StorageService

DEFAULT_HISTORY_LIMIT = 5

def _is_current(msg: Dict[str, Any], message_sid: Optional[str], message_id: Optional[str]) -> bool:
    if message_sid and msg.get('message_sid') == message_sid:
        return True
    return bool(message_id) and msg.get('id') == message_id

async def build_context_window(
    storage: StorageService,
    chat_id: str,
    current_message_sid: Optional[str],
    current_message_id: Optional[str] = None,
    limit: int = DEFAULT_HISTORY_LIMIT
) -> List[Dict[str, str]]:
    """Recent turns for the language model, oldest first.

    The message that triggered this delivery is left out; the caller sends
    it as the current user turn. It is matched by Twilio SID, or by stored
    id when the delivery carried no SID.
    """
    recent = await storage.recent_messages(chat_id, limit)

    history = []
    for msg in reversed(recent):
        if _is_current(msg, current_message_sid, current_message_id):
            continue
        history.append({
            'role': 'user' if msg.get('is_from_user') else 'assistant',
            'content': msg.get('content', '')
        })
    # At most limit - 1 prior turns, even when clock skew between writers
    # pushed the current message out of the newest `limit`
    if limit <= 1:
        return []
    return history[-(limit - 1):]
