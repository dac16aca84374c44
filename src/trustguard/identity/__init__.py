"""Identity and device registry for TrustGuard."""

from .registry import IdentityRegistry
from .models import Identity, Device, DeviceTrustLevel, Session

__all__ = ["IdentityRegistry", "Identity", "Device", "DeviceTrustLevel", "Session"]
