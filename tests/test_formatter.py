"""Tests for the Admins.cfg formatter and Steam ID helpers."""
from datetime import datetime

from bot.models import WhitelistEntry
from bot.services.steam_id import extract_steam_ids, is_valid_steam_id
from bot.services.whitelist_formatter import format_admins_cfg
from conftest import STEAM_A, STEAM_B


def entry(steam_id64, reason="donator", source="manual", group_name=None, **kwargs):
    return WhitelistEntry(
        steam_id64=steam_id64, reason=reason, source=source, group_name=group_name,
        granted_at=datetime(2025, 1, 1), **kwargs,
    )


def body(output):
    """Lines after the generated-at header."""
    lines = output.splitlines()
    assert lines[0].startswith("// Generated ")
    return lines[1:]


def test_whitelist_output():
    out = format_admins_cfg([
        entry(STEAM_A, discord_username="sniper"),
        entry(STEAM_B, username="InGame"),
    ])
    assert body(out) == [
        "Group=Whitelist:reserve",
        f"Admin={STEAM_A}:Whitelist // sniper",
        f"Admin={STEAM_B}:Whitelist // InGame",
    ]
    assert out.endswith("\n")


def test_duplicate_identifiers_written_once():
    out = format_admins_cfg([entry(STEAM_A), entry(STEAM_A, reason="reporting")], include_comments=False)
    assert body(out) == ["Group=Whitelist:reserve", f"Admin={STEAM_A}:Whitelist"]


def test_staff_only_uses_highest_group():
    out = format_admins_cfg(
        [
            entry(STEAM_A, reason="staff-role", source="role", group_name="Moderator"),
            entry(STEAM_A, reason="staff-role", source="role", group_name="HeadAdmin"),
            entry(STEAM_B, reason="member-role", source="role", group_name="Member"),
            entry(STEAM_B, reason="donator"),
        ],
        staff_only=True,
        include_comments=False,
    )
    lines = body(out)
    assert lines[0].startswith("Group=HeadAdmin:")
    assert lines[1:] == [f"Admin={STEAM_A}:HeadAdmin"]


def test_prefer_eos_id():
    out = format_admins_cfg(
        [entry(STEAM_A, eos_id="0002abcdef"), entry(STEAM_B)], prefer_eos_id=True, include_comments=False
    )
    assert body(out)[1:] == ["Admin=0002abcdef:Whitelist", f"Admin={STEAM_B}:Whitelist"]


def test_empty_output_has_only_header():
    assert body(format_admins_cfg([])) == []


def test_steam_id_validation():
    assert is_valid_steam_id(STEAM_A)
    assert is_valid_steam_id("76561199123456789")
    assert not is_valid_steam_id("76561190000000001")
    assert not is_valid_steam_id("7656119800000000")
    assert not is_valid_steam_id(None)


def test_extract_steam_ids_from_text():
    text = f"my id is {STEAM_A}, alt {STEAM_B} and again {STEAM_A}; not 1{STEAM_A}"
    assert extract_steam_ids(text) == [STEAM_A, STEAM_B]
    assert extract_steam_ids("") == []
