"""
Permission management feature module.

Role grants scoped by persona mode, per-user restrictions and feature flags,
combined by one resolution engine behind a TTL cache.
"""
