"""
API Module - Local Control API for a Session

Provides HTTP endpoints for driving one session from a local UI.
"""

from .rest import create_app, run_api_server

__all__ = ['create_app', 'run_api_server']
