"""
Durable job queue for background processing.

This package provides:
- A database-backed channel with lease (heartbeat) semantics
- A producer client with bounded, durable enqueue
- A worker runtime with bounded concurrency and fixed-delay retries
- A dead-letter state for jobs that exhaust their attempts
"""
