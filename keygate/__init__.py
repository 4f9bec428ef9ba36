"""
KeyGate — Access-Gated API-Key Intake Bot for Discord
======================================================
Collects advertising-platform API keys from subscribers through a short
guided DM dialogue, gates the dialogue behind time-bounded access grants,
and relays processing results back to users over an HTTP webhook.

Package layout::

    keygate/
    ├── config.py          # YAML → typed Python config
    ├── constants.py       # Menu tokens, enums shared by bot + API
    ├── database/
    │   ├── engine.py      # SQLAlchemy engine + async helper
    │   └── models.py      # ORM models (grants, funnels, keys, audit)
    ├── engine/
    │   ├── access.py      # Pure access decision
    │   └── funnel.py      # Funnel step table + validators
    ├── services/
    │   ├── access_service.py  # Grant / extend / deactivate + check_access
    │   ├── funnel_store.py    # Atomic funnel persistence
    │   ├── funnel_engine.py   # Funnel state machine (async)
    │   ├── key_store.py       # Constraint-backed key dedupe
    │   ├── relay.py           # NotificationRelay implementations
    │   ├── admin_console.py   # Admin façade + command dispatch
    │   ├── router.py          # on_user_message dispatch
    │   ├── reminder_service.py # Expiry / stale-funnel reminders
    │   └── user_service.py    # Known-user cache + status summary
    ├── bot/
    │   ├── core.py        # Bot subclass, cog loader
    │   └── cogs/
    │       ├── intake.py  # DM on_message → router
    │       ├── admin.py   # /keygate-* admin slash commands
    │       └── tasks.py   # Reminder loops
    └── api/
        ├── main.py        # FastAPI app
        ├── auth.py        # Admin JWT issuance
        └── routes/        # Relay, funnel queries, admin endpoints
"""

__version__ = "0.1.0"
