"""
Clinic availability scheduling and synchronization engine.

- services.slots: slot generation and scheduling configuration
- services.cache: TTL read-through cache with single-flight loads
- events: realtime reconciliation of remote changes
- middleware.abuse_guard: attempt counters and challenge gate
"""

__version__ = "0.1.0"
