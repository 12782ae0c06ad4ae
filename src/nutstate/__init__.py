"""Nut State frame service.

Serves a social-feed frame with a user's points statistics, read from Dune
analytics queries through an on-disk cache that is refreshed a few times a
day to stay within API credit limits.
"""

__version__ = "0.1.0"
