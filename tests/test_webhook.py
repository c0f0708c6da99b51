import logging
import pytest
from unittest.mock import AsyncMock

from api.webhook_handler import EMPTY_TWIML, sanitize_message, validate_message
from app import create_app
from lib.rate_limiter import InMemoryRateLimiter
from conftest import AUTH_TOKEN, WEBHOOK_URL, TEST_PHONE, sign

def inbound(body="Hello", sid="SMin0001", **extra):
    params = {
        'From': f"whatsapp:{TEST_PHONE}",
        'To': "whatsapp:+14155238886",
        'Body': body,
        'MessageSid': sid,
        'NumMedia': '0',
    }
    params.update(extra)
    return params

def post_webhook(client, params, signature=None, **kwargs):
    headers = {'X-Twilio-Signature': signature if signature is not None else sign(WEBHOOK_URL, params)}
    return client.post('/whatsapp/webhook', data=params, headers=headers, **kwargs)

def assert_acknowledged(response):
    assert response.status_code == 200
    assert response.content_type.startswith('text/xml')
    assert response.get_data(as_text=True) == EMPTY_TWIML

def test_new_contact_end_to_end(test_client, supabase, reply_provider, twilio_client):
    response = post_webhook(test_client, inbound("Hello"))

    assert_acknowledged(response)

    chats = supabase.tables['chats']
    assert len(chats) == 1

    inbound_msg, outbound_msg = supabase.tables['messages']
    assert inbound_msg['content'] == "Hello"
    assert inbound_msg['is_from_user'] is True
    assert inbound_msg['message_sid'] == "SMin0001"

    assert reply_provider.calls[0]['messages'] == [{'role': 'user', 'content': "Hello"}]
    assert reply_provider.calls[0]['system_prompt'] == "You are Dada Bora, a caring wellness companion."

    assert twilio_client.sent == [{'to': TEST_PHONE, 'body': reply_provider.reply}]

    assert outbound_msg['content'] == reply_provider.reply
    assert outbound_msg['is_from_user'] is False
    assert outbound_msg['message_sid'] == "SM0001"
    assert outbound_msg['delivery_status'] == "queued"

    assert chats[0]['last_message'] == reply_provider.reply
    assert chats[0]['unread_count'] == 1

def test_follow_up_uses_history(test_client, supabase, reply_provider):
    post_webhook(test_client, inbound("Hello", sid="SMin0001"))
    post_webhook(test_client, inbound("I feel anxious", sid="SMin0002"))

    assert len(supabase.tables['chats']) == 1
    assert reply_provider.calls[1]['messages'] == [
        {'role': 'user', 'content': "Hello"},
        {'role': 'assistant', 'content': reply_provider.reply},
        {'role': 'user', 'content': "I feel anxious"},
    ]
    assert supabase.tables['chats'][0]['unread_count'] == 2

@pytest.mark.parametrize("signature", ["", "bm90LWEtc2lnbmF0dXJl"])
def test_bad_signature_rejected_without_writes(test_client, supabase, twilio_client, signature):
    response = post_webhook(test_client, inbound(), signature=signature)

    assert response.status_code == 401
    assert response.json == {'error': 'Invalid signature'}
    assert supabase.tables['chats'] == []
    assert supabase.tables['messages'] == []
    assert twilio_client.sent == []

def test_signature_for_other_token_rejected(test_client, supabase):
    params = inbound()
    response = post_webhook(test_client, params, signature=sign(WEBHOOK_URL, params, token="other"))
    assert response.status_code == 401
    assert supabase.tables['messages'] == []

def test_missing_auth_token_fails_closed(test_client, supabase):
    supabase.set_integration('whatsapp', {'enabled': True})
    response = post_webhook(test_client, inbound())
    assert response.status_code == 401
    assert supabase.tables['messages'] == []

def test_config_read_failure_fails_closed(test_client, supabase):
    supabase.failing.add('integrations')
    response = post_webhook(test_client, inbound())
    assert response.status_code == 401

def test_disabled_integration_is_forbidden(test_client, supabase):
    supabase.set_integration('whatsapp', {'enabled': False, 'auth_token': AUTH_TOKEN})

    response = post_webhook(test_client, inbound())

    assert response.status_code == 403
    assert response.json == {'error': 'WhatsApp integration is disabled'}
    assert supabase.tables['chats'] == []

@pytest.mark.parametrize("params", [
    inbound(body=""),
    {'Body': "Hello", 'MessageSid': "SMin0001"},
    inbound(body="   "),
])
def test_invalid_payload_is_a_noop(test_client, supabase, params):
    assert_acknowledged(post_webhook(test_client, params))
    assert supabase.tables['messages'] == []

def test_length_boundary(test_client, supabase):
    assert_acknowledged(post_webhook(test_client, inbound("a" * 10001, sid="SMlong")))
    assert supabase.tables['messages'] == []

    assert_acknowledged(post_webhook(test_client, inbound("a" * 10000, sid="SMmax")))
    assert supabase.tables['messages'][0]['content'] == "a" * 10000

def test_disabled_chatbot_stores_without_replying(test_client, supabase, twilio_client):
    supabase.set_integration('chatbot', {'enabled': False})

    assert_acknowledged(post_webhook(test_client, inbound()))

    assert len(supabase.tables['messages']) == 1
    assert supabase.tables['messages'][0]['is_from_user'] is True
    assert twilio_client.sent == []

def test_message_is_sanitized_and_media_recorded(test_client, supabase):
    params = inbound("<b>hi</b> ", MediaUrl0="https://api.twilio.com/media/ME1", NumMedia='1')
    post_webhook(test_client, params)

    stored = supabase.tables['messages'][0]
    assert stored['content'] == "&lt;b&gt;hi&lt;/b&gt;"
    assert stored['media_url'] == "https://api.twilio.com/media/ME1"
    assert stored['num_media'] == 1

def test_store_failure_still_acknowledged(test_client, supabase):
    supabase.failing.add('messages')
    assert_acknowledged(post_webhook(test_client, inbound()))

def test_provider_exception_still_acknowledged(test_client, supabase, reply_provider, twilio_client):
    reply_provider.complete = AsyncMock(side_effect=Exception("LLM down"))

    assert_acknowledged(post_webhook(test_client, inbound()))

    assert len(supabase.tables['messages']) == 1
    assert twilio_client.sent == []

def test_send_failure_skips_outbound_record(test_client, supabase, twilio_client):
    twilio_client.fail_on_call = 1

    assert_acknowledged(post_webhook(test_client, inbound()))

    messages = supabase.tables['messages']
    assert len(messages) == 1
    assert supabase.tables['chats'][0]['last_message'] == "Hello"

def test_rate_limit(settings, supabase, handler):
    app = create_app(settings, supabase_client=supabase,
                     rate_limiter=InMemoryRateLimiter(1, 60), webhook_handler=handler)
    client = app.test_client()

    assert post_webhook(client, inbound(sid="SM1")).status_code == 200
    response = post_webhook(client, inbound(sid="SM2"))

    assert response.status_code == 429
    assert response.headers['Retry-After'] == '60'
    assert response.headers['X-RateLimit-Remaining'] == '0'
    assert len(supabase.tables['messages']) == 2  # only the first delivery

def test_health_endpoints(test_client):
    assert test_client.get('/whatsapp/webhook').json['provider'] == 'twilio'
    assert test_client.get('/test').json == {"status": "ok", "message": "Server is running"}

def test_validate_and_sanitize_helpers():
    assert validate_message("a" * 10000)
    assert not validate_message("a" * 10001)
    assert not validate_message(None)
    assert not validate_message("  \n ")
    assert sanitize_message("  <script>  ") == "&lt;script&gt;"

def test_pipeline_failure_logged_with_chat_id(test_client, supabase, caplog):
    supabase.failing.add('messages')

    with caplog.at_level(logging.ERROR, logger='lib.error_handler'):
        assert_acknowledged(post_webhook(test_client, inbound()))

    chat_id = supabase.tables['chats'][0]['id']
    assert any(f"chat: {chat_id}" in r.getMessage() for r in caplog.records)
