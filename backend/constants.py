"""
Centralized Constants - SINGLE SOURCE OF TRUTH

Categories, origin lists, table names and other fixed identifiers of the
GIB registered-user sync. Every SQL statement that names a canonical table
or view gets the name from here, never from caller input.

DO NOT duplicate these definitions in other files.

Reference: GIB e-document registered user lists
- PK: mailbox ("posta kutusu") list
- GB: sender unit ("gonderici birim") list
- Invoice / DespatchAdvice: document types a user is registered for
"""

from enum import Enum


# =============================================================================
# ORIGIN LISTS
# =============================================================================

class OriginList(Enum):
    """The two published lists. Value is the alias class stored per alias."""
    PK = 'PK'
    GB = 'GB'

    @property
    def staging_table(self) -> str:
        return STAGING_TABLES[self]


STAGING_TABLES = {
    OriginList.PK: 'gib_user_temp_pk',
    OriginList.GB: 'gib_user_temp_gb',
}


# =============================================================================
# CATEGORIES
# =============================================================================

class Category(Enum):
    """
    Independent partitions of the registry.

    Each member carries its fixed table, view, cache prefix and the numeric
    code stored in gib_user_changelog.document_type / archive_files.
    """
    EINVOICE = 'einvoice'
    EDESPATCH = 'edespatch'

    @property
    def document_tag(self) -> str:
        return _CATEGORY_ATTRS[self][0]

    @property
    def table_name(self) -> str:
        return _CATEGORY_ATTRS[self][1]

    @property
    def view_name(self) -> str:
        return _CATEGORY_ATTRS[self][2]

    @property
    def code(self) -> int:
        return _CATEGORY_ATTRS[self][3]

    @property
    def cache_prefix(self) -> str:
        return self.value

    @classmethod
    def parse(cls, value: str) -> 'Category':
        """
        Resolve a category from its API token.

        Accepts 'einvoice', 'edespatch' (any case) and the document tags
        'Invoice' / 'DespatchAdvice'.

        Raises:
            ValueError: unknown category
        """
        if isinstance(value, Category):
            return value
        token = (value or '').strip()
        for category in cls:
            if token.lower() == category.value or token == category.document_tag:
                return category
        raise ValueError(f"Invalid category: {value!r}")

    @classmethod
    def from_code(cls, code: int) -> 'Category':
        for category in cls:
            if category.code == code:
                return category
        raise ValueError(f"Invalid category code: {code!r}")


# (document tag, canonical table, derived view, changelog code)
_CATEGORY_ATTRS = {
    Category.EINVOICE: ('Invoice', 'e_invoice_gib_users', 'mv_e_invoice_gib_users', 1),
    Category.EDESPATCH: ('DespatchAdvice', 'e_despatch_gib_users', 'mv_e_despatch_gib_users', 2),
}

# Allow-lists checked by every SQL builder before a name reaches statement text
ALLOWED_CANONICAL_TABLES = frozenset(attrs[1] for attrs in _CATEGORY_ATTRS.values())
ALLOWED_VIEWS = frozenset(attrs[2] for attrs in _CATEGORY_ATTRS.values())
ALLOWED_DOCUMENT_TAGS = frozenset(attrs[0] for attrs in _CATEGORY_ATTRS.values())


# =============================================================================
# CHANGE LOG
# =============================================================================

class ChangeKind(Enum):
    ADDED = 1
    MODIFIED = 2
    REMOVED = 3

    @property
    def label(self) -> str:
        return self.name.lower()


CHANGELOG_TABLE = 'gib_user_changelog'


# =============================================================================
# RUN-LEVEL IDENTIFIERS
# =============================================================================

# pg_try_advisory_xact_lock key shared by every sync process
SYNC_ADVISORY_LOCK_ID = 8370142691

# sync_metadata singleton key
SYNC_METADATA_KEY = 'gib-gibuser-sync'

SYNC_STATUS_SUCCESS = 'success'
SYNC_STATUS_PARTIAL = 'partial'
SYNC_STATUS_FAILED = 'failed'

# last_sync_error column width
MAX_ERROR_LENGTH = 2000

# VKN (10 digits) or TCKN (11 digits)
IDENTIFIER_PATTERN = r'^\d{10,11}$'


def trim_to_max_length(value, max_length: int = MAX_ERROR_LENGTH):
    """Cut a string to max_length characters (None passes through)."""
    if not value or len(value) <= max_length:
        return value
    return value[:max_length]


# Registry timestamps (change log, metadata, archives) are Istanbul wall-clock
REGISTRY_TIME_ZONE = 'Europe/Istanbul'
