"""Render whitelist entries in Squad's Admins.cfg format."""
from __future__ import annotations

import logging
from typing import Iterable

from bot.models import WhitelistEntry
from bot.models.base import utcnow
from bot.services.role_groups import GROUPS_BY_NAME, WHITELIST_GROUP, SquadGroup

logger = logging.getLogger("roster.formatter")


def _identifier(entry: WhitelistEntry, prefer_eos_id: bool) -> str | None:
    if prefer_eos_id and entry.eos_id:
        return entry.eos_id
    return entry.steam_id64


def _comment(entry: WhitelistEntry) -> str:
    return entry.discord_username or entry.username or entry.reason


def format_admins_cfg(
    entries: Iterable[WhitelistEntry],
    *,
    staff_only: bool = False,
    prefer_eos_id: bool = False,
    include_comments: bool = True,
) -> str:
    """`Group=` lines for every group used, then one `Admin=` line per identifier.

    With `staff_only`, only role entries of staff groups are written, each
    identifier under its highest group. Otherwise every entry is written once
    under the plain reserve-slot group.
    """
    chosen: dict[str, tuple[SquadGroup, WhitelistEntry]] = {}
    duplicates = 0
    for entry in entries:
        if staff_only:
            group = GROUPS_BY_NAME.get(entry.group_name or "")
            if entry.source != "role" or group is None or not group.staff:
                continue
        else:
            group = WHITELIST_GROUP
        identifier = _identifier(entry, prefer_eos_id)
        if not identifier:
            continue
        current = chosen.get(identifier)
        if current is not None:
            duplicates += 1
            if current[0].priority >= group.priority:
                continue
        chosen[identifier] = (group, entry)

    groups = sorted({g for g, _ in chosen.values()}, key=lambda g: g.priority, reverse=True)
    lines = [f"// Generated {utcnow():%Y-%m-%dT%H:%M:%SZ}"]
    lines.extend(f"Group={g.name}:{g.permissions}" for g in groups)
    for identifier, (group, entry) in chosen.items():
        line = f"Admin={identifier}:{group.name}"
        if include_comments:
            line += f" // {_comment(entry)}"
        lines.append(line)
    logger.debug("Formatted %d admin lines (%d duplicates skipped)", len(chosen), duplicates)
    return "\n".join(lines) + "\n"
