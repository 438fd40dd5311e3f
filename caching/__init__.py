"""
Caching layer for the analytics engine.
Cache-aside store over Redis, key conventions, endpoint TTL policy and a
fixed-window rate limiter.
"""
