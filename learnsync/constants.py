from enum import StrEnum


class PublishState(StrEnum):
    PERSONAL = "personal"
    COURSE = "course"
    SITE = "site"


class WriteStatus(StrEnum):
    SENT = "sent"  # confirmed by the server
    STORED = "stored"  # accepted locally, waiting for sync


class SyncPhase(StrEnum):
    IDLE = "idle"
    DRAINING = "draining"
    REPORTING = "reporting"


# Web service functions
WS_SITE_INFO = "core_webservice_get_site_info"
WS_CREATE_NOTES = "core_notes_create_notes"
WS_GET_COURSE_NOTES = "core_notes_get_course_notes"
WS_VIEW_NOTES = "core_notes_view_notes"
WS_GET_COURSE_USER_PROFILES = "core_user_get_course_user_profiles"
WS_GET_USERS_BY_FIELD = "core_user_get_users_by_field"

# Text format used when creating notes (1 = HTML)
NOTE_FORMAT_HTML = 1

# Entity kinds stored in the pending-operation queue
ENTITY_NOTES = "notes"

# Local store namespaces
NS_WS_CACHE = "ws_cache"
NS_PENDING = "pending_operations"
NS_SYNC_TIMES = "sync_times"
