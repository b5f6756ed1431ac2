"""Payment and subscription ledger service."""
