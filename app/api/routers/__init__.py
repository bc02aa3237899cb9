"""
FastAPI routers for the academic records import API.

``imports`` accepts uploads and drives jobs; ``jobs`` reads job progress,
per-file outcomes and the stored records.
"""
