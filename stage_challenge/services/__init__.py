"""Service layer package.

Exports the batch processor and audit helper used by the CLI.
"""

from .activity_processor import ActivityOutcome, ActivityProcessor, ProcessingSummary
from .audit import write_audit_log

__all__ = ["ActivityOutcome", "ActivityProcessor", "ProcessingSummary", "write_audit_log"]
