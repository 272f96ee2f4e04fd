"""Election service that keeps an Algorand ledger and a PostgreSQL mirror in agreement."""

__version__ = "0.1.0"
