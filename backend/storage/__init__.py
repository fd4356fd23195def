# storage/__init__.py
# ============================================================================
# STAGED SUBMISSION STORAGE
# ============================================================================
# Keyed holding area for submission fields and attachments pending payment
# ============================================================================

from storage.submission_store import (
    IStagedSubmissionStore,
    InMemorySubmissionStore,
    PostgresSubmissionStore,
    generate_submission_id,
    validate_submission,
)

__all__ = [
    "IStagedSubmissionStore",
    "InMemorySubmissionStore",
    "PostgresSubmissionStore",
    "generate_submission_id",
    "validate_submission",
]
