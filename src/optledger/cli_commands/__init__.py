"""Click command modules registered on the ``optledger`` group in cli.py."""
