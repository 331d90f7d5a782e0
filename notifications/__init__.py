"""
notifications/ - Notification Channel
=====================================
Best-effort messages to school staff, sent after a workflow has committed.
A failed send is logged and never fails the operation that triggered it.
"""
