"""WebSocket session events for the upload flow.

A connected session asks for an upload token (``upload:auth``) and keeps
it alive (``upload:ping``) until the HTTP upload consumes it.
"""
