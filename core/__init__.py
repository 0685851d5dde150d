"""Core module - ledger-neutral models, configuration, security and logging.

Everything here is independent of a particular accounting ledger. Wire
formats and ledger-specific behaviour belong in /connectors/.
"""

__version__ = "1.0.0"
