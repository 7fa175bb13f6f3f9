"""
API routes for Threadline.
"""

from threadline.api.routes import connections, conversations, webhook

__all__ = ["connections", "conversations", "webhook"]
