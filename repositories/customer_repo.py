"""
repositories/customer_repo.py
-----------------------------
Data access layer for prospects.
All SQL queries related to the `customers` table live here.
"""

from models.customer import Customer
from repositories.base import PostgresRepository


class CustomerRepository(PostgresRepository):
    """Repository for the customers table."""

    table = "customers"
    model = Customer
    insert_columns = ("school_id", "name", "email", "phone", "status")
