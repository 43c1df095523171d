"""
HTTP API and WebSocket transport
"""
