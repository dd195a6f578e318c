import json
from urllib.parse import urlencode

import pytest

from config import BotSettings
from webhook_verify import WebAppVerifier, parse_init_data, sign_init_data
from conftest import BOT_TOKEN

USER = json.dumps({"id": 111, "first_name": "Asha"}, separators=(",", ":"))


def signed_init_data(fields, token=BOT_TOKEN):
    pairs = list(fields.items())
    return urlencode(pairs + [("hash", sign_init_data(pairs, token))])


@pytest.fixture()
def fields():
    return {"auth_date": "1704873600", "query_id": "AAH-abc", "user": USER}


def test_signed_payload_verifies(settings, fields):
    assert WebAppVerifier(settings).verify(signed_init_data(fields)) is True


@pytest.mark.parametrize("field", ["auth_date", "query_id", "user"])
def test_any_changed_field_fails(settings, fields, field):
    init_data = signed_init_data(fields)
    tampered = init_data.replace(urlencode({field: fields[field]}),
                                 urlencode({field: fields[field] + "0"}))
    assert tampered != init_data
    assert WebAppVerifier(settings).verify(tampered) is False


def test_signed_with_other_token_fails(settings, fields):
    assert WebAppVerifier(settings).verify(signed_init_data(fields, token="999:OTHER")) is False


def test_field_order_does_not_matter(settings, fields):
    pairs = list(fields.items())
    digest = sign_init_data(pairs, BOT_TOKEN)
    reordered = urlencode([("hash", digest)] + list(reversed(pairs)))
    assert WebAppVerifier(settings).verify(reordered) is True


def test_missing_hash_fails(settings, fields):
    assert WebAppVerifier(settings).verify(urlencode(fields)) is False


def test_non_ascii_hash_is_rejected_not_raised(settings):
    assert WebAppVerifier(settings).verify("auth_date=1&hash=%C3%A9") is False


def test_signature_matches_manual_hmac_chain():
    import hashlib
    import hmac

    secret = hmac.new(b"WebAppData", b"t", hashlib.sha256).digest()
    expected = hmac.new(secret, b"a=1\nb=2", hashlib.sha256).hexdigest()
    assert sign_init_data([("b", "2"), ("a", "1")], "t") == expected


def test_auto_mode_is_permissive_without_credentials(fields):
    verifier = WebAppVerifier(BotSettings(verification_mode="auto"))
    assert verifier.verify("") is True
    assert verifier.verify(urlencode(fields) + "&hash=deadbeef") is True


def test_auto_mode_accepts_empty_payload_even_when_configured(settings):
    assert WebAppVerifier(settings).verify("") is True


def test_enforce_mode_rejects_without_credentials(fields):
    verifier = WebAppVerifier(BotSettings(verification_mode="enforce"))
    assert verifier.verify("") is False
    assert verifier.verify(signed_init_data(fields)) is False


def test_enforce_mode_with_token(fields):
    verifier = WebAppVerifier(BotSettings(bot_token=BOT_TOKEN, verification_mode="enforce"))
    assert verifier.verify("") is False
    assert verifier.verify(signed_init_data(fields)) is True


def test_disabled_mode_accepts_anything():
    verifier = WebAppVerifier(BotSettings(bot_token=BOT_TOKEN, verification_mode="disabled"))
    assert verifier.verify("user=x&hash=nope") is True


def test_unknown_mode_is_a_config_error():
    with pytest.raises(ValueError):
        BotSettings(verification_mode="sometimes")


def test_parse_init_data_decodes_json_fields(fields):
    parsed = parse_init_data(signed_init_data(fields))
    assert parsed["user"] == {"id": 111, "first_name": "Asha"}
    assert parsed["query_id"] == "AAH-abc"
    assert parsed["auth_date"] == 1704873600
