import pytest

from config import BotSettings, Config, TestingConfig


def test_testing_config_is_selected():
    assert Config is TestingConfig
    assert Config.STORE_BACKEND == "memory"
    assert Config.ENABLE_SCHEDULER is False


@pytest.mark.parametrize("token", [None, "", "  ", "YOUR_TELEGRAM_BOT_TOKEN"])
def test_placeholder_token_means_unconfigured(token):
    settings = BotSettings(bot_token=token, admin_chat_id="YOUR_ADMIN_CHAT_ID", bot_username="YOUR_BOT_USERNAME")
    assert settings.is_configured is False
    assert settings.has_admin_chat is False
    assert settings.bot_username is None


def test_from_config():
    class Cfg(TestingConfig):
        TELEGRAM_BOT_TOKEN = "1:abc"
        ADMIN_TELEGRAM_CHAT_ID = "900"
        WEBAPP_VERIFICATION = "enforce"
        TELEGRAM_API_BASE = "http://localhost:8081/"

    settings = BotSettings.from_config(Cfg)
    assert settings.is_configured and settings.has_admin_chat
    assert settings.verification_mode == "enforce"
    assert settings.api_base == "http://localhost:8081"
    assert "1:abc" not in repr(settings)
