"""
API Module - Relay Server

HTTP and WebSocket endpoints for session pairing and signaling.
"""

from .rest import create_app, create_service, run_api_server

__all__ = ['create_app', 'create_service', 'run_api_server']
