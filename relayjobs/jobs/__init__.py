"""
Job lifecycle for Relay Jobs.

This package provides:
- A record store over async SQLAlchemy
- A broker adapter over Redis Streams
- Hook-based job types and the controller running them
- Retry scanning with a fixed backoff schedule
"""
