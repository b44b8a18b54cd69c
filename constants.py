"""constants.py

Fixed enumerations shared by models, validation and routes.
"""

CATEGORIES = ('MUSIC', 'STUDY')

MUSIC_SUBCATEGORIES = (
    'HYMNAL',
    'SHEET_MUSIC',
    'CANTATA',
    'HANDBELL',
    'CHOIR_ANTHEM',
    'ACCOMPANIMENT',
    'INSTRUMENT',
    'OTHER_MUSIC',
)

STUDY_SUBCATEGORIES = (
    'BIBLE_STUDY',
    'BOOK',
    'CURRICULUM_KIT',
    'DVD_VIDEO',
    'DEVOTIONAL',
    'LEADER_GUIDE',
    'YOUTH_CURRICULUM',
    'CHILDREN_CURRICULUM',
    'OTHER_STUDY',
)

ALL_SUBCATEGORIES = MUSIC_SUBCATEGORIES + STUDY_SUBCATEGORIES

SUBCATEGORIES_BY_CATEGORY = {
    'MUSIC': MUSIC_SUBCATEGORIES,
    'STUDY': STUDY_SUBCATEGORIES,
}

FORMATS = ('BOOK', 'DVD', 'CD', 'DIGITAL', 'SHEET', 'KIT', 'OTHER')

AVAILABILITY_STATUSES = ('AVAILABLE', 'ON_LOAN', 'UNAVAILABLE')

ROLES = ('EDITOR', 'ADMIN')

LOAN_STATUSES = ('ACTIVE', 'RETURNED', 'OVERDUE', 'LOST')
OPEN_LOAN_STATUSES = ('ACTIVE', 'OVERDUE')

REQUEST_STATUSES = ('PENDING', 'APPROVED', 'DENIED', 'CANCELLED')

TAG_CATEGORIES = ('MUSIC', 'STUDY', 'BOTH')

CHURCH_STATUSES = ('PENDING', 'APPROVED', 'REJECTED')

# Category given to tags created on the fly by the bulk import
DEFAULT_NEW_TAG_CATEGORY = 'MUSIC'
