"""Cross-cutting infrastructure: errors, logging, metrics, locks, clock."""
