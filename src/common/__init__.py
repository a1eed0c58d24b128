"""
Common utilities for quest-progress-sync.

Modules:
- errors: error taxonomy shared by client and server
- retry: bounded retry with exponential backoff
- progress_client: httpx client for the progress service
- config: client settings from the environment
"""

__all__ = [
    "config",
    "errors",
    "progress_client",
    "retry",
]
