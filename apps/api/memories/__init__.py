"""Memory uploads, storage ledger and derivative generation."""
