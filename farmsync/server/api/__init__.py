"""
REST API for the FarmSync records server.
"""

from .main import create_app

__all__ = ['create_app']
