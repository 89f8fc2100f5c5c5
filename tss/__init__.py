"""Moderation enforcement core: warn points, mute lifecycle and antinuke incident response."""

__version__ = "1.0.0"
