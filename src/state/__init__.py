"""
Pairing state models and the remote session store.

The session blob is encrypted (Fernet) and stored in S3, one object per
client identity.
"""

from .models import ClientEvent, IncomingMessage, PairingSnapshot, PairingStatus, SessionBlob

__all__ = ["ClientEvent", "IncomingMessage", "PairingSnapshot", "PairingStatus", "SessionBlob"]
