TEMPLATE_SIZES = ("a4", "letter")
TEMPLATE_ORIENTATIONS = ("portrait", "landscape")

# CSS pixels at 96 DPI: A4 is 210 x 297 mm, Letter is 8.5 x 11 in.
CANVAS_DIMENSIONS = {
    ("a4", "portrait"): (793, 1122),
    ("a4", "landscape"): (1122, 793),
    ("letter", "portrait"): (816, 1056),
    ("letter", "landscape"): (1056, 816),
}

POINTS_PER_PIXEL = 72.0 / 96.0

TEMPLATE_STATUS_DRAFT = "draft"
TEMPLATE_STATUS_ACTIVE = "active"
TEMPLATE_STATUS_ARCHIVED = "archived"
TEMPLATE_STATUSES = (
    TEMPLATE_STATUS_DRAFT,
    TEMPLATE_STATUS_ACTIVE,
    TEMPLATE_STATUS_ARCHIVED,
)

ISSUANCE_STATUS_ISSUED = "issued"
ISSUANCE_STATUS_REVOKED = "revoked"

AUDIT_ISSUED = "issued"
AUDIT_REVOKED = "revoked"
AUDIT_DELETED = "deleted"
AUDIT_DOWNLOADED = "downloaded"
AUDIT_CORRECTED = "corrected"

CLASS_STATUSES = ("scheduled", "ongoing", "completed", "cancelled")
ACTIVE_ENROLLMENT_STATUSES = ("enrolled", "active", "completed")

DEFAULT_BACKGROUND_COLOR = "#ffffff"
