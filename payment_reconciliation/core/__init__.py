"""Reconciliation core: initializer, reconciler, webhook ingest and ledger service."""
