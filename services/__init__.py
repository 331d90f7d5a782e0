"""
services/ - Business Logic Layer
================================
Workflows over the repositories: the event ledger, installment lifecycle,
payment status derivation, customer conversion and the audit trail.
Every workflow runs its writes through a unit of work and never opens a
connection itself.
"""
