from .archive import ArchivedGrant
from .grants import Grant, GrantStatus, TerminationReason

__all__ = ["ArchivedGrant", "Grant", "GrantStatus", "TerminationReason"]
