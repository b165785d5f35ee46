"""Audio Fetch Pipeline - Convert API service.

FastAPI service for conversion jobs: creation, status polling, streaming
from transient or durable storage, and the library listing.
"""

__all__: list[str] = []
