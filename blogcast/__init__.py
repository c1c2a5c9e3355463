"""
Blogcast realtime gateway.

Presence, room membership and event fan-out for a social blogging platform.
"""

__version__ = "0.1.0"
