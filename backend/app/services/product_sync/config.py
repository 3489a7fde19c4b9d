"""Product sync module: constants.

Pure constants, no imports from the rest of the app.
"""

# Wiki REST API (v2)
WIKI_API_PREFIX = "/wiki/api/v2"
WIKI_BODY_FORMAT = "anonymous_export_view"
WIKI_CHILDREN_LIMIT = 250
WIKI_FIRMWARE_HEADER = "Firmware"

# Wiki tree item values
ITEM_STATUS_CURRENT = "current"
ITEM_TYPE_PAGE = "page"
ITEM_TYPE_FOLDER = "folder"

# Issue tracker
TRACKER_API_PREFIX = "/api/v4"
TRACKER_UPLOAD_NAMESPACE = "/-/project/"
TRACKER_ISSUE_MARKER = "/-/issues/"
UPLOAD_MARKER = "/uploads/"
BUNDLE_LINE_MARKER = "production bundle"   # matched case-insensitive
BUNDLE_EXTENSION = ".zip"
BUNDLE_LINK_PATTERN = r"\((/uploads/[^)]+\.zip)\)"

# Firmware-derived attachments
FIRMWARE_TAG = "firmware"
FIRMWARE_ATTACHMENT_STATUS = "approved"

# Sync error stages
STAGE_CRAWL = "crawl"
STAGE_RESOLVE = "resolve"
STAGE_RECONCILE = "reconcile"
STAGE_ATTACHMENTS = "attachments"

# Redis: last sync summary (shared across workers) and sync events
REDIS_SYNC_LAST = "prodhub:sync:last"
REDIS_CHANNEL_SYNC = "prodhub:sync:events"
SYNC_STATUS_TTL = 7 * 24 * 3600
