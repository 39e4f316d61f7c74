"""
Session credential persistence.

The credential is an opaque blob owned by the transport. It is wrapped in a
versioned envelope, encrypted with Fernet and stored in S3 so a restarted process
can resume the paired session.
"""

from .credential_store import CredentialStore, NoPersistenceStore, PersistenceError, S3CredentialStore
from .models import CredentialEnvelope

__all__ = [
    "CredentialEnvelope",
    "CredentialStore",
    "NoPersistenceStore",
    "PersistenceError",
    "S3CredentialStore",
]
