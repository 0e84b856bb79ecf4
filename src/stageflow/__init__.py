"""Stageflow -- pipeline stage automation and analytics engine.

Moves opportunities through configurable pipeline stages under
trigger/condition/action rules, records every move in an append-only
ledger, and computes stage-level analytics (conversion, dwell time,
bottlenecks, recommendations) from that ledger.
"""
