"""
FastAPI routers for the cutdown worker.
"""

from cutdown.routers import health, processing, uploads

__all__ = ["health", "uploads", "processing"]
