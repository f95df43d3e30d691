"""Squad admin groups and the Discord roles that map onto them."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional

from config import GroupRoleSettings


@dataclass(frozen=True)
class SquadGroup:
    name: str
    priority: int
    permissions: str
    staff: bool
    reason: str  # whitelist reason used for role entries of this group


HEAD_ADMIN = SquadGroup(
    "HeadAdmin", 300,
    "cameraman,canseeadminchat,chat,forceteamchange,immune,reserve,teamchange,balance,manageserver,config",
    staff=True, reason="staff-role",
)
SQUAD_ADMIN = SquadGroup(
    "SquadAdmin", 200,
    "balance,cameraman,canseeadminchat,chat,forceteamchange,immune,reserve",
    staff=True, reason="staff-role",
)
MODERATOR = SquadGroup("Moderator", 100, "canseeadminchat,chat,reserve", staff=True, reason="staff-role")
MEMBER = SquadGroup("Member", 0, "reserve", staff=False, reason="member-role")

ALL_GROUPS = (HEAD_ADMIN, SQUAD_ADMIN, MODERATOR, MEMBER)
GROUPS_BY_NAME = {g.name: g for g in ALL_GROUPS}

# Plain grants (donator, service member, ...) are served under this group
WHITELIST_GROUP = SquadGroup("Whitelist", -1, "reserve", staff=False, reason="")


class RoleGroupMap:
    """Resolves Discord role IDs to Squad groups."""

    def __init__(self, settings: GroupRoleSettings):
        self._by_role: dict[int, SquadGroup] = {}
        for group, role_ids in (
            (HEAD_ADMIN, settings.head_admin),
            (SQUAD_ADMIN, settings.squad_admin),
            (MODERATOR, settings.moderator),
            (MEMBER, settings.member),
        ):
            for role_id in role_ids:
                self._by_role[role_id] = group

    @property
    def tracked_role_ids(self) -> set[int]:
        return set(self._by_role)

    def groups_for_roles(self, role_ids: Iterable[int]) -> list[SquadGroup]:
        """Distinct groups held, highest priority first."""
        groups = {self._by_role[r] for r in role_ids if r in self._by_role}
        return sorted(groups, key=lambda g: g.priority, reverse=True)

    def member_groups(self, member) -> list[SquadGroup]:
        return self.groups_for_roles(role.id for role in getattr(member, "roles", []))

    def highest_member_group(self, member) -> Optional[SquadGroup]:
        groups = self.member_groups(member)
        return groups[0] if groups else None
