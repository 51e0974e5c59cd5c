"""Library Lending - core application package

This package contains:
- Data models (models.py)
- SQLite entity store with atomic multi-record writes (database.py)
- Field validation (validators.py)
- Borrow/return transaction core (lending.py)
- User and catalog management (library.py)
- HTTP API (api.py) and admin CLI (cli.py)
"""

__version__ = "1.0.0"
