"""Audio Fetch Pipeline - Core application modules.

Provides:
- SQLite models and DB primitives (job ledger, library index)
- Blob store adapter and retrieval resolver
- Conversion orchestrator and task queue wiring
- Core utilities: atomic_io, hashing, paths
"""

__version__ = "0.1.0"
