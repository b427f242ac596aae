"""
Document modules.

Each module owns its models, persistence and routes, and reuses the shared
pieces in ``app.skplan`` (actor context, role table, activity log, blob storage).
"""
