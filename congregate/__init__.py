"""
Congregate — Community Governance & Engagement Engine
=====================================================
The rules layer behind a church/community social app: who may do what in a
group, how announcements move from scheduled to published and who has read
them, how event RSVPs respect capacity, and how reactions and pins stay in
sync between an optimistic local cache and the shared store.

Package layout::

    congregate/
    ├── __main__.py        # Publication worker (scheduler + push listener)
    ├── config.py          # YAML → typed Python config
    ├── constants.py       # Role / permission / category display tables
    ├── database/
    │   ├── engine.py      # SQLAlchemy engine + async helper
    │   └── models.py      # All ORM models
    ├── engine/
    │   ├── permissions.py # Role hierarchy + permission lookup
    │   ├── roles.py       # Who may promote / demote / remove whom
    │   ├── local_store.py # get/set/clear key-value store
    │   ├── rate_guard.py  # Sliding-window per-action attempt limits
    │   ├── optimistic.py  # Pending → Committed | RolledBack mutations
    │   ├── events.py      # ChangeEvent envelope
    │   └── notifications.py # PG LISTEN/NOTIFY push channel
    └── services/
        ├── errors.py               # Typed failures
        ├── schemas.py              # Pydantic input models
        ├── identity.py             # Actor context per group
        ├── membership_service.py   # Joins, promotions, removals, custom roles
        ├── announcement_service.py # Announcement lifecycle + receipts
        ├── scheduler.py            # Background publication sweep
        ├── event_service.py        # Events + capacity-checked RSVPs
        └── reaction_service.py     # Reaction toggles + pins
"""

__version__ = "0.1.0"
