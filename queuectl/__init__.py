"""
queuectl

A PostgreSQL-backed job queue for shell commands: atomic claims with
FOR UPDATE SKIP LOCKED, exponential retry backoff, a dead-letter queue,
and a pool of concurrent workers with cooperative shutdown.
"""

__version__ = "1.0.0"
