"""Stage-level pipeline analytics computed from ledger snapshots."""
