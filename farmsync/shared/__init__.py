"""
Shared layer for FarmSync.

Data models, the structured exception hierarchy, collaborator interfaces
and logging configuration used by both the client and the server.
"""
