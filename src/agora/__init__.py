"""agora - Chat backend with real-time fan-out.

Usage:
    agora serve --port 8000

    # Programmatic
    from agora.api import app
    from agora.registry import get_registry
    from agora.fanout import broadcast
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
