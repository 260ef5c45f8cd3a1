"""
congregate.constants — Shared Presentation Constants
=====================================================

Single source of truth for how roles, permissions and announcement
categories are labelled and coloured.  The UI layer imports from here.
"""

from __future__ import annotations

from dataclasses import dataclass

from congregate.database.models import AnnouncementCategory
from congregate.engine.permissions import PermissionKey, Role


# ---------------------------------------------------------------------------
# Announcement categories
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class CategoryStyle:
    label: str
    emoji: str
    color: str
    bg_color: str
    priority: int  # 0 = most urgent


ANNOUNCEMENT_CATEGORIES: dict[AnnouncementCategory, CategoryStyle] = {
    AnnouncementCategory.URGENT: CategoryStyle(
        "Urgent", "\U0001f6a8", "#ef4444", "rgba(239, 68, 68, 0.1)", 0,       # 🚨
    ),
    AnnouncementCategory.INFO: CategoryStyle(
        "Info", "ℹ️", "#3b82f6", "rgba(59, 130, 246, 0.1)", 2,
    ),
    AnnouncementCategory.REMINDER: CategoryStyle(
        "Reminder", "⏰", "#f59e0b", "rgba(245, 158, 11, 0.1)", 1,
    ),
    AnnouncementCategory.CELEBRATION: CategoryStyle(
        "Celebration", "\U0001f389", "#10b981", "rgba(16, 185, 129, 0.1)", 3,  # 🎉
    ),
}


def category_style(category: AnnouncementCategory | str) -> CategoryStyle:
    """Display style for *category*; unknown values render as info."""
    try:
        return ANNOUNCEMENT_CATEGORIES[AnnouncementCategory(category)]
    except ValueError:
        return ANNOUNCEMENT_CATEGORIES[AnnouncementCategory.INFO]


# ---------------------------------------------------------------------------
# Roles
# ---------------------------------------------------------------------------
ROLE_LABELS: dict[Role, str] = {
    Role.PASTOR: "Pastor/Admin",
    Role.ADMIN: "Admin",
    Role.MODERATOR: "Moderator",
    Role.MEMBER: "Member",
    Role.VISITOR: "Visitor",
}

ROLE_COLORS: dict[Role, str] = {
    Role.PASTOR: "#f59e0b",     # amber
    Role.ADMIN: "#3b82f6",
    Role.MODERATOR: "#10b981",
    Role.MEMBER: "#6b7280",
    Role.VISITOR: "#9ca3af",
}

# Icon names from the client's icon set
ROLE_ICONS: dict[Role, str] = {
    Role.PASTOR: "Crown",
    Role.ADMIN: "Shield",
    Role.MODERATOR: "ShieldCheck",
    Role.MEMBER: "User",
    Role.VISITOR: "Eye",
}


# ---------------------------------------------------------------------------
# Permissions (role editor)
# ---------------------------------------------------------------------------
PERMISSION_LABELS: dict[PermissionKey, str] = {
    PermissionKey.MANAGE_GROUP: "Manage Group Settings",
    PermissionKey.MANAGE_MEMBERS: "Manage Members",
    PermissionKey.MANAGE_ROLES: "Manage Roles",
    PermissionKey.PIN_MESSAGES: "Pin Messages",
    PermissionKey.DELETE_MESSAGES: "Delete Messages",
    PermissionKey.CREATE_EVENTS: "Create Events",
    PermissionKey.POST_ANNOUNCEMENTS: "Post Announcements",
    PermissionKey.MODERATE_CONTENT: "Moderate Content",
    PermissionKey.MUTE_MEMBERS: "Mute Members",
    PermissionKey.SEND_MESSAGES: "Send Messages",
    PermissionKey.REACT: "Add Reactions",
    PermissionKey.VIEW_MEMBERS: "View Members",
}

PERMISSION_DESCRIPTIONS: dict[PermissionKey, str] = {
    PermissionKey.MANAGE_GROUP: "Edit group name, description, and settings",
    PermissionKey.MANAGE_MEMBERS: "Invite, remove, and manage group members",
    PermissionKey.MANAGE_ROLES: "Create, edit, and assign custom roles",
    PermissionKey.PIN_MESSAGES: "Pin and unpin messages in group chat",
    PermissionKey.DELETE_MESSAGES: "Delete any message in group chat",
    PermissionKey.CREATE_EVENTS: "Create and manage group events",
    PermissionKey.POST_ANNOUNCEMENTS: "Post announcements to the group",
    PermissionKey.MODERATE_CONTENT: "Review and act on flagged content",
    PermissionKey.MUTE_MEMBERS: "Temporarily mute members in chat",
    PermissionKey.SEND_MESSAGES: "Send messages in group chat",
    PermissionKey.REACT: "Add emoji reactions to messages",
    PermissionKey.VIEW_MEMBERS: "View the list of group members",
}
