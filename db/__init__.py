"""
db/ - Database Layer
====================
Handles the PostgreSQL connection pool, schema initialization and the
transaction boundary (unit of work) the services run their writes through.
This layer is the lowest in the architecture and has no dependencies on the
services.
"""
