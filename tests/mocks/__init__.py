"""Test doubles for services outside the device."""

from .remote import FakeClock, ScriptedRemote

__all__ = ["FakeClock", "ScriptedRemote"]
