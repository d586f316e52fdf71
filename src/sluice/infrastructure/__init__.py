"""
sluice.infrastructure - Persistence Layer
===========================================

The store contract Sluice runs against and its in-memory implementation.

Architecture:
    ┌─────────────── SCHEDULING / RESILIENCE ─────────────┐
    │  Admission, BatchSelector, Lifecycle, BreakerService │
    └─────────────────────┬───────────────────────────────┘
                          │ single-record transactions
                          ▼
    ┌─────────────── INFRASTRUCTURE LAYER ────────────────┐
    │  JobStore (ABC)                                      │
    │    └── InMemoryJobStore                              │
    └──────────────────────────────────────────────────────┘
"""

from sluice.infrastructure.job_store import InMemoryJobStore, JobStore, KeyedLocks

__all__ = [
    "JobStore",
    "InMemoryJobStore",
    "KeyedLocks",
]
