"""
Server layer for FarmSync.

A versioned record store that rejects stale writes with a structured
conflict, exposed over a FastAPI application.
"""
