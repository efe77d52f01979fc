"""Background workers: audit dispatch and pending-transaction expiry."""
