"""Payment ledger service package."""
