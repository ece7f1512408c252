"""
claudebox - session broker for sandboxed coding-assistant terminals.
"""

__version__ = "0.1.0"
