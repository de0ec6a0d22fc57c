# app/core/constants.py

# System categories seeded at startup. Ids are fixed so synced blocks can
# reference them without a lookup.
WORK_CATEGORY_ID = 1
PERSONAL_CATEGORY_ID = 2
MEETING_CATEGORY_ID = 3

SYSTEM_CATEGORIES = [
    {"id": WORK_CATEGORY_ID, "name": "Work", "color": "#6366F1"},
    {"id": PERSONAL_CATEGORY_ID, "name": "Personal", "color": "#10B981"},
    {"id": MEETING_CATEGORY_ID, "name": "Meeting", "color": "#F59E0B"},
]


# Audit actions emitted by the integration engine
class AuditAction:
    INTEGRATION_CONNECT = "IntegrationConnect"
    INTEGRATION_DISCONNECT = "IntegrationDisconnect"
    INTEGRATION_SYNC = "IntegrationSync"
    INTEGRATION_SYNC_FAILED = "IntegrationSyncFailed"


# Prefixes for provider-namespaced dedup keys
GITHUB_EXTERNAL_ID_PREFIX = "github"
GOOGLE_CALENDAR_EXTERNAL_ID_PREFIX = "gcal"

MAX_DESCRIPTION_LENGTH = 2000
