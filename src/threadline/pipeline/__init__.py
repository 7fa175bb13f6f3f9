"""
Webhook ingestion pipeline: identifiers, classification, media, threading.
"""
