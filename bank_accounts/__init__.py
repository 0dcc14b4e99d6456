"""
Bank Accounts Service

Account records and money movement (top-up, transfer) over HTTP, with
transactional balance mutations backed by a relational table.
"""

__version__ = "1.0.0"
