"""
HTTP API - FastAPI routers for the finance engine.
"""
