# Helpers - Utility Functions
# Small utilities shared by the connection manager and the runner

"""
Helpers Module

Provides utility functions for:
- Building the token-bearing connection URI
- Masking secrets before they reach the logs
- Timestamp formatting
"""

from datetime import datetime
from typing import Optional
from urllib.parse import urlencode

def build_uri(url: str, token: str) -> str:
    """
    Append the auth token to the endpoint as the ``Token`` query parameter

    Args:
        url: WebSocket endpoint (ws:// or wss://)
        token: Static auth token

    Returns:
        Connection URI (e.g., "wss://host/ws?Token=abc")
    """
    separator = '&' if '?' in url else '?'
    return f"{url}{separator}{urlencode({'Token': token})}"

def mask_token(token: str, visible: int = 3) -> str:
    """
    Mask a secret for logging, keeping only its last characters

    Args:
        token: Secret to mask
        visible: Number of trailing characters left readable

    Returns:
        Masked string (e.g., "***abc"), "***" for short or empty tokens
    """
    if not token or len(token) <= visible * 2:
        return "***"
    return f"***{token[-visible:]}"

def mask_uri(uri: str, token: str) -> str:
    """Replace the encoded token inside a URI with its masked form."""
    if not token:
        return uri
    encoded = urlencode({'Token': token})
    return uri.replace(encoded, f"Token={mask_token(token)}")

def format_local_time(timestamp: Optional[float] = None) -> str:
    """
    Format a wall-clock timestamp in local time

    Args:
        timestamp: Unix timestamp in seconds, now when omitted

    Returns:
        Formatted datetime string (YYYY-MM-DD HH:MM:SS)
    """
    dt = datetime.now() if timestamp is None else datetime.fromtimestamp(timestamp)
    return dt.strftime('%Y-%m-%d %H:%M:%S')
