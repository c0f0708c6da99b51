import copy
import pytest
from collections import defaultdict
from types import SimpleNamespace
from typing import Dict, List
from twilio.request_validator import RequestValidator

from api.services.config_store import ConfigStore
from api.services.storage import StorageService
from api.services.whatsapp import WhatsAppSender
from api.webhook_handler import WebhookHandler
from app import create_app
from lib.config import Settings
from lib.rate_limiter import InMemoryRateLimiter
from lib.reply_provider import ReplyProvider

AUTH_TOKEN = "test-auth-token"
WEBHOOK_URL = "http://localhost/whatsapp/webhook"
TEST_PHONE = "+15551234567"

class FakeQuery:
    """Just enough of the supabase-py query builder for the pipeline"""

    def __init__(self, db, table: str):
        self.db = db
        self.table = table
        self.op = 'select'
        self.payload = None
        self.filters = []
        self._order = None
        self._limit = None

    def select(self, *columns):
        self.op = 'select'
        return self

    def insert(self, rows):
        self.op = 'insert'
        self.payload = rows if isinstance(rows, list) else [rows]
        return self

    def update(self, fields):
        self.op = 'update'
        self.payload = fields
        return self

    def eq(self, column, value):
        self.filters.append((column, value))
        return self

    def order(self, column, desc=False):
        self._order = (column, desc)
        return self

    def limit(self, n):
        self._limit = n
        return self

    def _matches(self, row) -> bool:
        return all(row.get(c) == v for c, v in self.filters)

    def execute(self):
        if self.table in self.db.failing:
            raise Exception(f"{self.table} unavailable")

        rows = self.db.tables[self.table]
        if self.op == 'insert':
            inserted = [copy.deepcopy(r) for r in self.payload]
            rows.extend(inserted)
            return SimpleNamespace(data=copy.deepcopy(inserted))

        matched = [r for r in rows if self._matches(r)]
        if self.op == 'update':
            self.db.updates.append((self.table, dict(self.payload)))
            for row in matched:
                row.update(self.payload)
            return SimpleNamespace(data=copy.deepcopy(matched))

        if self._order:
            column, desc = self._order
            matched = sorted(matched, key=lambda r: r[column], reverse=desc)
        if self._limit is not None:
            matched = matched[:self._limit]
        return SimpleNamespace(data=copy.deepcopy(matched))

class FakeRpc:
    """Server-side functions from supabase/migrations, applied in one step"""

    def __init__(self, db, function: str, params: dict):
        self.db = db
        self.function = function
        self.params = params

    def execute(self):
        if self.function in self.db.failing:
            raise Exception(f"{self.function} unavailable")
        self.db.rpc_calls.append((self.function, dict(self.params)))

        if self.function == 'increment_unread_count':
            for row in self.db.tables['chats']:
                if row['id'] == self.params['p_chat_id']:
                    row['unread_count'] = (row.get('unread_count') or 0) + 1
                    row['last_message'] = self.params['p_last_message']
                    row['last_message_time'] = self.params['p_last_message_time']
            return SimpleNamespace(data=None)
        raise Exception(f"Unknown function {self.function}")

class FakeSupabase:
    def __init__(self):
        self.tables: Dict[str, List[dict]] = defaultdict(list)
        self.failing = set()
        self.rpc_calls = []
        self.updates = []

    def table(self, name: str) -> FakeQuery:
        return FakeQuery(self, name)

    def rpc(self, function: str, params: dict) -> FakeRpc:
        return FakeRpc(self, function, params)

    def set_integration(self, name: str, config: dict) -> None:
        self.tables['integrations'] = [r for r in self.tables['integrations'] if r['id'] != name]
        self.tables['integrations'].append({'id': name, 'config': config})

class StubReplyProvider(ReplyProvider):
    name = "Stub"

    def __init__(self, reply: str = "Hi there! How are you feeling today?"):
        super().__init__(api_key="stub", model="stub-model")
        self.reply = reply
        self.calls = []

    async def complete(self, system_prompt, messages):
        self.calls.append({'system_prompt': system_prompt, 'messages': messages})
        return self.reply

class FakeTwilioClient:
    def __init__(self, fail_on_call: int = None):
        self.sent = []
        self.fail_on_call = fail_on_call

    def send_message(self, to_number, body, media_url=None):
        if self.fail_on_call is not None and len(self.sent) + 1 == self.fail_on_call:
            raise Exception("Twilio is down")
        self.sent.append({'to': to_number, 'body': body})
        return f"SM{len(self.sent):04d}", "queued"

def sign(url: str, params: dict, token: str = AUTH_TOKEN) -> str:
    return RequestValidator(token).compute_signature(url, params)

@pytest.fixture
def settings():
    return Settings(
        supabase_url="http://supabase.test",
        supabase_key="service-key",
        admin_api_token="admin-token",
        webhook_public_url=None,
        chunk_delay_seconds=0
    )

@pytest.fixture
def supabase():
    db = FakeSupabase()
    db.set_integration('whatsapp', {
        'enabled': True,
        'account_sid': 'AC123',
        'auth_token': AUTH_TOKEN,
        'twilio_whatsapp_number': '+14155238886'
    })
    db.set_integration('chatbot', {
        'enabled': True,
        'provider': 'openai',
        'openai_api_key': 'sk-test',
        'system_prompt': 'You are Dada Bora, a caring wellness companion.'
    })
    return db

@pytest.fixture
def reply_provider(monkeypatch):
    provider = StubReplyProvider()
    monkeypatch.setattr(
        'api.services.config_store.build_reply_provider',
        lambda chatbot: provider if chatbot and chatbot.enabled else None
    )
    return provider

@pytest.fixture
def twilio_client():
    return FakeTwilioClient()

@pytest.fixture
def handler(settings, supabase, reply_provider, twilio_client):
    return WebhookHandler(
        settings,
        ConfigStore(supabase),
        StorageService(supabase),
        sender_factory=lambda config: WhatsAppSender(
            config.whatsapp, delay_seconds=0, client_factory=lambda cfg: twilio_client
        )
    )

@pytest.fixture
def test_client(settings, supabase, handler):
    app = create_app(
        settings,
        supabase_client=supabase,
        rate_limiter=InMemoryRateLimiter(100, 60),
        webhook_handler=handler
    )
    app.config['TESTING'] = True
    return app.test_client()
