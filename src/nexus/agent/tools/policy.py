"""
Tool scoping policies.

A ToolPolicy decides which registered tools a session may see and call.
Precedence: deny list, then an explicit allow list (exclusive when set),
then the profile's base set plus also_allow. The full profile allows
every tool that is not denied.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Optional


class ToolProfile(str, Enum):
    """Base tool sets."""

    MINIMAL = "minimal"
    BASIC = "basic"
    CODING = "coding"
    MESSAGING = "messaging"
    FULL = "full"


_MINIMAL = frozenset({"help", "status", "info", "list_tools"})
_BASIC = _MINIMAL | {"read_file", "list_files", "web_search", "web_fetch"}

TOOL_PROFILES: dict[ToolProfile, frozenset[str]] = {
    ToolProfile.MINIMAL: _MINIMAL,
    ToolProfile.BASIC: _BASIC,
    ToolProfile.CODING: _BASIC | {"write_file", "edit_file", "shell", "docker", "git"},
    ToolProfile.MESSAGING: _BASIC | {"send_whatsapp", "send_notification"},
    ToolProfile.FULL: frozenset(),  # Empty means all tools
}


@dataclass
class ToolPolicy:
    """Filter over the tool registry.

    Attributes:
        profile: Base tool set
        allow: Explicit allow list, replaces the profile when non-empty
        deny: Tools that are never allowed
        also_allow: Tools added on top of the profile
    """

    profile: ToolProfile = ToolProfile.FULL
    allow: list[str] = field(default_factory=list)
    deny: list[str] = field(default_factory=list)
    also_allow: list[str] = field(default_factory=list)

    @classmethod
    def scoped(cls, names: Iterable[str]) -> ToolPolicy:
        """Policy that allows exactly the named tools."""
        return cls(allow=list(dict.fromkeys(names)))

    def is_allowed(self, tool_name: str) -> bool:
        """Check if a tool is allowed by this policy."""
        if tool_name in self.deny:
            return False

        if self.allow:
            return tool_name in self.allow

        profile_tools = TOOL_PROFILES.get(self.profile, frozenset())
        if self.profile == ToolProfile.FULL or not profile_tools:
            return True

        return tool_name in profile_tools or tool_name in self.also_allow

    def to_dict(self) -> dict[str, Any]:
        return {
            "profile": self.profile.value,
            "allow": list(self.allow),
            "deny": list(self.deny),
            "also_allow": list(self.also_allow),
        }

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> Optional[ToolPolicy]:
        if not data:
            return None
        return cls(
            profile=ToolProfile(data.get("profile", ToolProfile.FULL.value)),
            allow=list(data.get("allow") or []),
            deny=list(data.get("deny") or []),
            also_allow=list(data.get("also_allow") or []),
        )


def is_tool_allowed(tool_name: str, policy: Optional[ToolPolicy]) -> bool:
    """No policy means every tool is allowed."""
    if policy is None:
        return True
    return policy.is_allowed(tool_name)
