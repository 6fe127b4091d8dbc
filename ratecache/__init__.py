"""ratecache: sliding window rate limiting and two-tier query caching.

The core is framework agnostic and async; ``ratecache.middleware`` and
``ratecache.main`` adapt it to FastAPI.
"""

__version__ = "0.1.0"
