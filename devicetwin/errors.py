"""
Classification of storage errors raised by the device metadata store.

Embedded backends and their drivers phrase unique-constraint violations
differently, so callers that want "insert, but ignore if already present"
semantics check the raised exception here instead of matching backend
error text themselves.
"""

from typing import Optional

# Messages ending with one of these are duplicate-key violations.
NON_UNIQUE_SUFFIXES = (
    "are not unique",
)

# Messages containing one of these are duplicate-key violations.
# Matching is loose on purpose: any "constraint failed" text counts.
NON_UNIQUE_FRAGMENTS = (
    "UNIQUE constraint failed",
    "constraint failed",
    "duplicate key value violates unique constraint",
    "Duplicate entry",
)


def is_non_unique_name_error(err: Optional[BaseException]) -> bool:
    """
    Report whether a storage error is a uniqueness/duplicate-key violation.

    Args:
        err: Exception raised by a store operation, or None

    Returns:
        True if the error message matches a known duplicate-key pattern
    """
    if err is None:
        return False

    try:
        message = str(err)
    except Exception:
        # An exception whose __str__ fails carries no usable message.
        return False

    if message.endswith(NON_UNIQUE_SUFFIXES):
        return True
    return any(fragment in message for fragment in NON_UNIQUE_FRAGMENTS)
