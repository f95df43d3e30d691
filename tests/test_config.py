"""Tests for settings loading."""
import pytest

from config import load_settings
from conftest import MEMBER_ROLE, TEST_ENV


def test_defaults():
    settings = load_settings({})
    assert settings.guild_id is None
    assert settings.verification.code_length == 6
    assert settings.verification.ttl_minutes == 5
    assert settings.unlink_cooldown_days == 30
    assert settings.whitelist_http_port == 3001
    assert settings.ticket_channel_prefix == "ticket-"


def test_test_env():
    settings = load_settings(TEST_ENV)
    assert settings.groups.member == {MEMBER_ROLE}
    assert settings.award_roles.for_reason("donation") == settings.award_roles.donator
    assert settings.sync_batch_delay_seconds == 0


@pytest.mark.parametrize(
    "env,message",
    [
        ({"GUILD_ID": "abc"}, "GUILD_ID must be an integer"),
        ({"ROLE_SYNC_BATCH_DELAY": "soon"}, "ROLE_SYNC_BATCH_DELAY must be a number"),
        ({"VERIFICATION_CODE_LENGTH": "12"}, "between 4 and 10"),
        ({"VERIFICATION_CODE_TTL_MINUTES": "0"}, "at least 1"),
        ({"UNLINK_COOLDOWN_DAYS": "0"}, "unlink_cooldown_days"),
        ({"MEMBER_ROLE_IDS": "5", "SQUAD_MODERATOR_ROLE_IDS": "5"}, "mapped to both"),
    ],
)
def test_invalid_settings(env, message):
    with pytest.raises(ValueError) as exc:
        load_settings(env)
    assert message in str(exc.value)


def test_errors_are_collected():
    with pytest.raises(ValueError) as exc:
        load_settings({"GUILD_ID": "x", "WHITELIST_HTTP_PORT": "y"})
    assert "GUILD_ID" in str(exc.value)
    assert "WHITELIST_HTTP_PORT" in str(exc.value)
