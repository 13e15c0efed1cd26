"""
Domain layer for notification processing business logic.

This layer contains:
- Data models (type-safe structures)
- Error taxonomy (config, connection, decode and send errors)
- Business logic (decode, send and ack decision pipeline)
"""
