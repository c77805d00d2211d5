"""HTTP and WebSocket endpoint for sessionbridge.

Exposes the session registry and command executor over a FastAPI
application, plus a per-session WebSocket stream for live output and
interactive input.
"""
