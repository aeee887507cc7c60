"""
Infrastructure adapters: Redis, queue backends, object storage and mail.
"""
