"""Group expense ledger: split calculation, balances and settlements."""

__version__ = "0.1.0"
