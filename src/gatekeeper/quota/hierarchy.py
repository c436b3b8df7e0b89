"""Scope hierarchy: user → group → site → global."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from gatekeeper.quota.models import GLOBAL_SCOPE_ID, QuotaScope


@dataclass
class ScopeHierarchy:
    """
    Membership used to find every quota that governs a request.

    A user belongs to any number of groups and at most one site; a group
    belongs to at most one site. Everything rolls up to the global scope.
    """

    user_groups: dict[str, list[str]] = field(default_factory=dict)
    group_sites: dict[str, str] = field(default_factory=dict)
    user_sites: dict[str, str] = field(default_factory=dict)
    default_site: str | None = None

    def _sites_for_groups(self, groups: list[str]) -> list[str]:
        return [self.group_sites[g] for g in groups if g in self.group_sites]

    def chain(self, scope: QuotaScope, scope_id: str) -> list[tuple[QuotaScope, str]]:
        """
        List the scope itself followed by its ancestors, nearest first.

        Args:
            scope: Scope the request is charged to
            scope_id: Identifier within that scope

        Returns:
            Ordered (scope, scope_id) pairs ending with the global scope
        """
        chain: list[tuple[QuotaScope, str]] = [(scope, scope_id)]
        sites: list[str] = []

        if scope == QuotaScope.USER:
            groups = self.user_groups.get(scope_id, [])
            chain.extend((QuotaScope.GROUP, g) for g in groups)
            if scope_id in self.user_sites:
                sites.append(self.user_sites[scope_id])
            sites.extend(self._sites_for_groups(groups))
        elif scope == QuotaScope.GROUP:
            sites.extend(self._sites_for_groups([scope_id]))

        if scope in (QuotaScope.USER, QuotaScope.GROUP):
            if not sites and self.default_site:
                sites.append(self.default_site)
            for site in dict.fromkeys(sites):
                chain.append((QuotaScope.SITE, site))

        if scope != QuotaScope.GLOBAL:
            chain.append((QuotaScope.GLOBAL, GLOBAL_SCOPE_ID))

        return chain

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_groups": self.user_groups,
            "group_sites": self.group_sites,
            "user_sites": self.user_sites,
            "default_site": self.default_site,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ScopeHierarchy:
        return cls(
            user_groups={str(k): [str(g) for g in v] for k, v in data.get("user_groups", {}).items()},
            group_sites={str(k): str(v) for k, v in data.get("group_sites", {}).items()},
            user_sites={str(k): str(v) for k, v in data.get("user_sites", {}).items()},
            default_site=data.get("default_site"),
        )
