"""Data models for sessions and the WebSocket message envelope."""
