"""
Threadline HTTP API.
"""
