"""Business logic services.

This module contains service-layer functions for the credential store,
the chat session ledger, the usage meter and the tier gate. Every
function takes its collaborators (database session, secret codec,
provider gateway) explicitly.
"""

from keyledger.services.secret_codec import get_secret_codec, verify_key_format
from keyledger.services.tiers import has_access, limits_for

__all__ = [
    "get_secret_codec",
    "verify_key_format",
    "has_access",
    "limits_for",
]
