import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from lib.database import CHATS_TABLE, INCREMENT_UNREAD_FUNCTION, MESSAGES_TABLE
from lib.error_handler import StorageError

logger = logging.getLogger(__name__)

def utc_now() -> datetime:
    return datetime.now(timezone.utc)

class StorageService:
    """Conversations (`chats`) and their append-only message log in Supabase"""

    def __init__(self, supabase_client, clock: Callable[[], datetime] = utc_now):
        self.supabase = supabase_client
        self.clock = clock
        self.chats_table = CHATS_TABLE
        self.messages_table = MESSAGES_TABLE
        self._last_timestamp: Optional[datetime] = None

    def _timestamp(self) -> str:
        # Message order is by timestamp, so two writes in the same
        # microsecond must still sort in write order.
        now = self.clock()
        if self._last_timestamp is not None and now <= self._last_timestamp:
            now = self._last_timestamp + timedelta(microseconds=1)
        self._last_timestamp = now
        return now.isoformat(timespec='microseconds')

    def _execute(self, query, action: str):
        try:
            return query.execute()
        except Exception as e:
            logger.error(f"Failed to {action}: {str(e)}")
            raise StorageError(f"Failed to {action}: {str(e)}")

    async def find_conversation_by_hash(self, phone_number_hash: str) -> Optional[Dict[str, Any]]:
        result = self._execute(
            self.supabase.table(self.chats_table)
                .select('*')
                .eq('phone_number_hash', phone_number_hash)
                .limit(1),
            "look up conversation"
        )
        return result.data[0] if result.data else None

    async def create_conversation(self, chat_id: str, anonymous_name: str, phone_number_hash: str,
                                  last_message: str = '', source: str = 'twilio-whatsapp') -> Dict[str, Any]:
        now = self._timestamp()
        record = {
            'id': chat_id,
            'anonymous_name': anonymous_name,
            'phone_number_hash': phone_number_hash,  # never the raw number
            'last_message': last_message,
            'last_message_time': now,
            'unread_count': 0,
            'created_at': now,
            'source': source
        }
        self._execute(self.supabase.table(self.chats_table).insert(record), "create conversation")
        logger.info(f"Created conversation {chat_id} ({anonymous_name})")
        return record

    async def append_inbound(self, chat_id: str, text: str, message_sid: Optional[str],
                             media_url: Optional[str] = None, num_media: int = 0) -> str:
        """Store a message from the contact and bump the unread counter"""
        timestamp = self._timestamp()
        message_id = self._insert_message({
            'chat_id': chat_id,
            'content': text,
            'timestamp': timestamp,
            'is_from_user': True,
            'message_sid': message_sid or None,
            'media_url': media_url or None,
            'num_media': num_media
        })

        # Incremented inside Postgres so concurrent deliveries never lose a count
        self._execute(
            self.supabase.rpc(INCREMENT_UNREAD_FUNCTION, {
                'p_chat_id': chat_id,
                'p_last_message': text,
                'p_last_message_time': timestamp
            }),
            "update conversation"
        )
        return message_id

    async def append_outbound(self, chat_id: str, text: str, message_sid: Optional[str],
                              delivery_status: Optional[str] = None) -> str:
        """Store a reply sent to the contact. Unread counter is untouched."""
        timestamp = self._timestamp()
        message_id = self._insert_message({
            'chat_id': chat_id,
            'content': text,
            'timestamp': timestamp,
            'is_from_user': False,
            'message_sid': message_sid or None,
            'media_url': None,
            'num_media': 0,
            'delivery_status': delivery_status
        })
        self._update_conversation(chat_id, {
            'last_message': text,
            'last_message_time': timestamp
        })
        return message_id

    async def recent_messages(self, chat_id: str, limit: int) -> List[Dict[str, Any]]:
        """Most recent messages first"""
        result = self._execute(
            self.supabase.table(self.messages_table)
                .select('*')
                .eq('chat_id', chat_id)
                .order('timestamp', desc=True)
                .limit(limit),
            "fetch recent messages"
        )
        return result.data or []

    def _insert_message(self, record: Dict[str, Any]) -> str:
        record = {'id': str(uuid.uuid4()), **record}
        self._execute(self.supabase.table(self.messages_table).insert(record), "store message")
        return record['id']

    def _update_conversation(self, chat_id: str, fields: Dict[str, Any]) -> None:
        self._execute(
            self.supabase.table(self.chats_table).update(fields).eq('id', chat_id),
            "update conversation"
        )
