"""
Common Package

Shared infrastructure for the gamification engine: configuration,
logging, exceptions, serialization and the Redis client.
"""
