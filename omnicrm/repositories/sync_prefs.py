from omnicrm.db.helpers import fetch_one
from omnicrm.models.domain import SyncPreferences


class SyncPrefsRepository:
    """user_sync_prefs reads."""

    @classmethod
    async def get(cls, user_id: str) -> SyncPreferences:
        """The user's preferences, or the defaults when none are saved."""

        query = """
            SELECT gmail_query, gmail_label_includes, gmail_label_excludes,
                   calendar_include_organizer_self, calendar_include_private,
                   calendar_time_window_days
            FROM user_sync_prefs
            WHERE user_id = %s
        """

        row = await fetch_one(query, (user_id,))
        if not row:
            return SyncPreferences()

        defaults = SyncPreferences()
        return SyncPreferences(
            gmail_query=row.get("gmail_query") or defaults.gmail_query,
            gmail_label_includes=list(row.get("gmail_label_includes") or []),
            gmail_label_excludes=list(row.get("gmail_label_excludes") or []),
            calendar_include_organizer_self=bool(row.get("calendar_include_organizer_self", True)),
            calendar_include_private=bool(row.get("calendar_include_private", False)),
            calendar_time_window_days=row.get("calendar_time_window_days") or defaults.calendar_time_window_days,
        )
