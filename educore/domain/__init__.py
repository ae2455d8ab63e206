"""Domain layer - business records and value objects.

These pydantic models mirror the JSON documents kept in the document store
(camelCase keys) and are independent of the storage backend.
"""
