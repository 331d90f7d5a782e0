"""
models/ - Domain Models
=======================
Plain dataclasses for persisted records, plus pydantic schemas for event
payloads and typed mutation requests.
"""
