"""
API endpoints for the rmri engine.

Provides REST endpoints under /api/rmri for:
- Runs (start, execute, status, results, agents, logs, cancel)
- Context entries (write, read, list, versions)
- Health and queue statistics
"""
