"""Telephony leg: call-control actions and the per-call media relay."""

from callbridge.telephony.control import CallControlClient, CallControlError
from callbridge.telephony.relay import MediaRelay

__all__ = ["CallControlClient", "CallControlError", "MediaRelay"]
