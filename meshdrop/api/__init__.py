"""
API Module - REST control surface
"""

from .rest import create_app, run_api_server

__all__ = ['create_app', 'run_api_server']
