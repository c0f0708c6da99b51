import hashlib
import logging
import random
import re
import string
import time
from typing import NamedTuple

from api.services.storage import StorageService

logger = logging.getLogger(__name__)

ADJECTIVES = [
    'Swift', 'Bright', 'Calm', 'Wise', 'Kind',
    'Bold', 'Gentle', 'Noble', 'Clever', 'Brave',
    'Happy', 'Lucky', 'Peaceful', 'Vibrant', 'Serene',
    'Radiant', 'Mighty', 'Swift', 'Golden', 'Silver'
]

NOUNS = [
    'Lion', 'Eagle', 'Dolphin', 'Phoenix', 'Tiger',
    'Wolf', 'Falcon', 'Panda', 'Leopard', 'Hawk',
    'Owl', 'Fox', 'Bear', 'Deer', 'Swan',
    'Raven', 'Butterfly', 'Turtle', 'Whale', 'Sparrow'
]

def hash_phone_number(phone_number: str) -> str:
    """One-way identity tag for a contact address.

    Only the digits are hashed, so `whatsapp:+1 555-123-4567` and
    `+15551234567` map to the same tag.
    """
    digits = re.sub(r'\D', '', phone_number)
    return f"hash_{hashlib.sha256(digits.encode()).hexdigest()}"

def generate_anonymous_name() -> str:
    """e.g. SwiftLion247. Not unique across conversations."""
    return f"{random.choice(ADJECTIVES)}{random.choice(NOUNS)}{random.randint(100, 999)}"

def generate_chat_id() -> str:
    suffix = ''.join(random.choices(string.ascii_lowercase + string.digits, k=6))
    return f"chat_{int(time.time() * 1000)}_{suffix}"

class ResolvedIdentity(NamedTuple):
    conversation_id: str
    anonymous_name: str
    is_new_conversation: bool

class IdentityMapper:
    def __init__(self, storage_service: StorageService):
        self.storage = storage_service

    async def resolve(self, phone_number: str, first_message: str = '') -> ResolvedIdentity:
        # Lookup-then-create is not atomic: two concurrent first messages
        # from one contact can create two conversations.
        phone_hash = hash_phone_number(phone_number)
        existing = await self.storage.find_conversation_by_hash(phone_hash)

        if existing:
            return ResolvedIdentity(existing['id'], existing['anonymous_name'], False)

        chat_id = generate_chat_id()
        anonymous_name = generate_anonymous_name()
        await self.storage.create_conversation(
            chat_id=chat_id,
            anonymous_name=anonymous_name,
            phone_number_hash=phone_hash,
            last_message=first_message
        )
        return ResolvedIdentity(chat_id, anonymous_name, True)
